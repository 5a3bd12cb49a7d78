"""HTTP views for the authenticated user's cart.

Every view operates on ``request.user``'s own cart; there is no way to read
or edit another user's cart through this API.
"""

from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.orders.schemas import normalize_sku

from .schemas import CartLineIn
from .store import CartStore


def _cart_body(user_id: str) -> dict:
    return {"items": [{"sku": sku, "quantity": qty} for sku, qty in CartStore().lines(user_id).items()]}


def _invalid(exc: Exception) -> Response:
    return Response(
        {"kind": "VALIDATION_ERROR", "detail": "INVALID_PAYLOAD", "message": str(exc)},
        status=status.HTTP_400_BAD_REQUEST,
    )


class CartView(APIView):
    def get(self, request):
        return Response(_cart_body(str(request.user.pk)))

    def post(self, request):
        """Add a product, or overwrite its quantity if it is already in the cart."""
        try:
            dto = CartLineIn.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        user_id = str(request.user.pk)
        CartStore().put(user_id, dto.sku, dto.quantity)
        return Response(_cart_body(user_id))

    def put(self, request):
        try:
            dto = CartLineIn.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        user_id = str(request.user.pk)
        if not CartStore().update(user_id, dto.sku, dto.quantity):
            return Response(
                {"kind": "NOT_FOUND", "detail": "NOT_IN_CART", "message": "Product not found in cart"},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(_cart_body(user_id))

    def delete(self, request):
        user_id = str(request.user.pk)
        CartStore().empty(user_id)
        return Response(_cart_body(user_id))


class CartLineView(APIView):
    def delete(self, request, sku: str):
        try:
            sku = normalize_sku(sku)
        except ValueError as e:
            return _invalid(e)
        user_id = str(request.user.pk)
        CartStore().remove(user_id, sku)
        return Response(_cart_body(user_id))
