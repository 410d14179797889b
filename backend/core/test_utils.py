"""
Test utilities and factories for creating test data
"""
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from backend.catalog.models import Product, ProductColor, ProductSize
from backend.inventory import resolver
from backend.orders import builder
from decimal import Decimal
import random
import string

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def create_user(username=None, email=None, password='testpass123', is_staff=False, is_superuser=False):
        """Create a test user"""
        if not username:
            username = f'testuser_{TestDataFactory.random_string(6)}'
        if not email:
            email = f'{username}@test.com'
        user = User.objects.create_user(
            username=username,
            email=email,
            password=password,
            is_staff=is_staff,
            is_superuser=is_superuser
        )
        return user

    @staticmethod
    def create_product(name=None, sku=None):
        """Create a test product"""
        if not name:
            name = f'Product_{TestDataFactory.random_string(6)}'
        if not sku:
            sku = f'SKU_{TestDataFactory.random_string(8)}'
        return Product.objects.create(name=name, sku=sku)

    @staticmethod
    def create_color(product, name=None):
        """Create a color option for a product"""
        return ProductColor.objects.create(
            product=product,
            name=name or f'Color_{TestDataFactory.random_string(4)}'
        )

    @staticmethod
    def create_size(product, name=None):
        """Create a size option for a product"""
        return ProductSize.objects.create(
            product=product,
            name=name or random.choice(['S', 'M', 'L', 'XL'])
        )

    @staticmethod
    def create_stock_record(product, color=None, size=None, available=0, user=None):
        """Create a stock record through the ledger so its movement log balances"""
        return resolver.provision_stock_record(
            product.pk,
            color.pk if color else None,
            size.pk if size else None,
            opening_count=available,
            actor=user,
        )

    @staticmethod
    def create_order(product, quantity=1, color=None, size=None, buyer_id=None, unit_price=None, **order_fields):
        """Create an order with a single line, without touching stock"""
        line = TestDataFactory.cart_line(product, quantity, color, size,
                                         unit_price if unit_price is not None else Decimal('10.00'))
        order, _ = builder.create_order(
            buyer_id or f'buyer_{TestDataFactory.random_string(6)}', [line], **order_fields
        )
        return order

    @staticmethod
    def cart_line(product, quantity=1, color=None, size=None, unit_price='10.00'):
        """Cart line payload as the storefront sends it"""
        return {
            'product_id': product.pk,
            'quantity': quantity,
            'color_id': color.pk if color else None,
            'size_id': size.pk if size else None,
            'unit_price': unit_price,
        }


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
