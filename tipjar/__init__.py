"""
Tipjar Django Application

A platform for creators, causes and crowdfunding campaigns to receive Bitcoin
Lightning tips from supporters.

Features:
- Public tipping pages with running totals, top supporter and recent tips
- Lightning charges created through an external payment processor
- Completion by signed webhook or by supporter-side status polling, applied
  exactly once
- Google OAuth sign-in for page owners via django-allauth
"""
