"""
Tipjar URL Configuration

URL Pattern Organization:
- Page discovery and the owner dashboard
- Payment API used by the tip form (create, status polling)
- Payment processor webhook
- Page statistics and owner updates
- Public tipping pages (must be last due to catch-all pattern)
"""

from . import views
from django.urls import path

urlpatterns = [
    path('', views.page_list, name='page_list'),
    path('dashboard/', views.dashboard, name='dashboard'),

    # Payment API
    path('api/payments/create/', views.create_payment, name='create_payment'),
    path('api/payments/status/<int:tip_id>/', views.payment_status, name='payment_status'),
    path('api/payments/status/charge/<str:external_id>/', views.payment_status, name='payment_status_by_charge'),
    path('api/webhooks/lightning/', views.payment_webhook, name='payment_webhook'),

    # Pages
    path('api/pages/<str:username>/stats/', views.page_stats_json, name='page_stats'),
    path('api/pages/<str:username>/update/', views.update_page, name='update_page'),

    # Public tipping pages (MUST be last due to catch-all pattern)
    path('<str:username>/', views.tipping_page, name='tipping_page'),
]
