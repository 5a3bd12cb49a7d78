import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings, monkeypatch):
    """Run against in-process inventory/payments, fresh for every test."""
    settings.USE_HTTP_ADAPTERS = False
    settings.PAYMENTS_WEBHOOK_SECRET = ""
    from apps.orders import providers
    monkeypatch.setattr(providers, "_inventory_stub", None)
    monkeypatch.setattr(providers, "_payments_stub", None)
    # throttle history lives in the default cache
    cache.clear()


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username="alice", password="pw")


@pytest.fixture
def other_user(django_user_model):
    return django_user_model.objects.create_user(username="bob", password="pw")


@pytest.fixture
def staff_user(django_user_model):
    return django_user_model.objects.create_user(username="root", password="pw", is_staff=True)


@pytest.fixture
def auth_client(client, user):
    client.force_login(user)
    return client


@pytest.fixture
def make_order():
    """Create a PENDING order through the service, as the API would."""
    from apps.orders import providers
    from apps.orders.domain import OrderAmounts, OrderItem

    def _make(owner, items=(("P1", 2, 500),), amounts=(1000, 80, 200, 1280)):
        return providers.get_order_service().create_order(
            str(owner.pk), [OrderItem(*it) for it in items], OrderAmounts(*amounts)
        )

    return _make
