from django.urls import include, path

from apps.orders.urls import webhook_urlpatterns

urlpatterns = [
    path("health/", include("apps.monitoring.urls")),
    path("api/orders/", include("apps.orders.urls")),
    path("api/cart/", include("apps.carts.urls")),
    path("api/payments/", include((webhook_urlpatterns, "payments"))),
]
