from django.urls import path
from .views import CartView, CartLineView

app_name = "carts"

urlpatterns = [
    path("", CartView.as_view(), name="cart"),
    path("<str:sku>/", CartLineView.as_view(), name="cart-line"),
]
