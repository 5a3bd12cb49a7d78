from django.urls import path
from .views import (
    ConfirmPaymentView,
    OrdersCollectionView,
    OrdersPingView,
    PaymentIntentView,
    PaymentWebhookView,
    RetrieveOrderView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/payment-intent/", PaymentIntentView.as_view(), name="orders-payment-intent"),
    path("<uuid:oid>/pay/", ConfirmPaymentView.as_view(), name="orders-pay"),
]

webhook_urlpatterns = [
    path("webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
]
