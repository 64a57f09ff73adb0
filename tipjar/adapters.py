"""
Tipjar Social Authentication Adapters

Customizes django-allauth for Google OAuth sign-in of page owners. On first
sign-in the user's Google email is stored, and any unowned page whose contact
email matches is handed to the new user.
"""

import logging

from allauth.socialaccount.adapter import DefaultSocialAccountAdapter

from .models import TippingPage

logger = logging.getLogger(__name__)


class TipjarSocialAccountAdapter(DefaultSocialAccountAdapter):
    """Social account adapter linking Google users to their tipping pages."""

    def is_auto_signup_allowed(self, request, sociallogin):
        """Create users straight from Google data, without a signup form."""
        return True

    def get_login_redirect_url(self, request):
        return '/dashboard/'

    def save_user(self, request, sociallogin, form=None):
        """
        Save the new user and claim pages registered under their email.

        Returns:
            User: The created user
        """
        user = super().save_user(request, sociallogin, form)

        email = sociallogin.account.extra_data.get('email')
        if email:
            if user.email != email:
                user.email = email
                user.save(update_fields=['email'])

            claimed = TippingPage.objects.filter(owner__isnull=True, contact_email__iexact=email).update(owner=user)
            if claimed:
                logger.info("User %s claimed %s page(s) by email", user.pk, claimed)

        return user
