"""
Tipjar Project URL Configuration

Root URL dispatcher. Authentication is handled by django-allauth under
/accounts/, the admin under /admin/, and everything else by the tipjar app.

For more information on Django URL configuration:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),

    # Identity provider (Google OAuth via django-allauth)
    path('accounts/', include('allauth.urls')),

    path('', include('tipjar.urls')),
]

handler404 = 'tipjar.views.custom_page_not_found'
