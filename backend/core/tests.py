"""
Test suite for the core module
Tests: audit logging helper, audit log API and domain error payloads
"""
from unittest import mock

from django.db import DatabaseError
from django.test import TestCase, RequestFactory
from rest_framework import status

from backend.core.exceptions import (
    EmptyCart, InvalidTransition, OrderNotFound, PartialFulfillmentError, PersistenceFailed,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.core.utils import create_audit_log, get_client_ip


class AuditLogUtilsTests(TestCase):
    """Test create_audit_log and get_client_ip"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.factory = RequestFactory()

    def test_create_audit_log_with_request(self):
        request = self.factory.post('/api/v1/orders/', HTTP_X_FORWARDED_FOR='10.0.0.7, 172.16.0.1')
        request.user = self.user
        log = create_audit_log(request=request, action='order_create', model_name='Order', object_id=12,
                               changes={'lines': 2})
        self.assertEqual(log.user, self.user)
        self.assertEqual(log.ip_address, '10.0.0.7')
        self.assertEqual(log.object_id, '12')
        self.assertEqual(log.changes, {'lines': 2})

    def test_missing_fields_skip_log(self):
        self.assertIsNone(create_audit_log(action='order_create', model_name='Order'))
        self.assertEqual(AuditLog.objects.count(), 0)

    def test_database_error_does_not_propagate(self):
        with mock.patch.object(AuditLog.objects, 'create', side_effect=DatabaseError('table locked')):
            self.assertIsNone(create_audit_log(user=self.user, action='stock_sale', model_name='StockRecord', object_id=1))

    def test_get_client_ip_remote_addr(self):
        request = self.factory.get('/', REMOTE_ADDR='192.168.1.20')
        self.assertEqual(get_client_ip(request), '192.168.1.20')
        self.assertIsNone(get_client_ip(None))


class DomainErrorTests(TestCase):
    """Test error codes, statuses and response payloads"""

    def test_default_message_from_docstring(self):
        error = EmptyCart()
        self.assertEqual(error.message, 'Cart is empty.')
        self.assertEqual(error.to_response_data(), {'error': 'empty_cart', 'message': 'Cart is empty.'})
        self.assertEqual(error.http_status, status.HTTP_400_BAD_REQUEST)

    def test_details_included(self):
        error = OrderNotFound('Order 5 not found', order_id=5)
        self.assertEqual(error.to_response_data()['details'], {'order_id': 5})
        self.assertEqual(error.http_status, status.HTTP_404_NOT_FOUND)

    def test_invalid_transition(self):
        error = InvalidTransition('shipped', 'processing')
        self.assertEqual(error.http_status, status.HTTP_409_CONFLICT)
        self.assertIn("'shipped'", error.message)
        self.assertEqual(error.details, {'current': 'shipped', 'requested': 'processing'})

    def test_partial_fulfillment(self):
        product = TestDataFactory.create_product()
        order = TestDataFactory.create_order(product)
        error = PartialFulfillmentError(order, [1, 2], [3], cause=PersistenceFailed())
        self.assertEqual(error.http_status, status.HTTP_207_MULTI_STATUS)
        self.assertIn('1 of 3 lines outstanding', error.message)
        self.assertEqual(error.details['cause'], 'persistence_failed')
        self.assertEqual(error.details['order_id'], order.pk)


class AuditLogAPITests(TestCase):
    """Test audit log API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.staff = TestDataFactory.create_user(is_staff=True)
        self.client = AuthenticatedAPIClient()
        self.own = create_audit_log(user=self.user, action='stock_adjust', model_name='StockRecord', object_id=1)
        self.other = create_audit_log(user=self.staff, action='order_status', model_name='Order', object_id=2,
                                      object_reference='Order #2')

    def test_user_sees_own_logs(self):
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row['id'] for row in response.data['results']], [self.own.pk])
        self.assertEqual(response.data['count'], 1)

    def test_staff_sees_all_logs(self):
        self.client.authenticate_user(self.staff)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.data['count'], 2)

        response = self.client.get('/api/v1/audit-logs/', {'action': 'order_status'})
        self.assertEqual([row['id'] for row in response.data['results']], [self.other.pk])

        response = self.client.get('/api/v1/audit-logs/', {'reference': 'Order #2'})
        self.assertEqual(response.data['count'], 1)

        response = self.client.get('/api/v1/audit-logs/', {'object_id': '1', 'model': 'StockRecord'})
        self.assertEqual([row['id'] for row in response.data['results']], [self.own.pk])

    def test_detail_permission(self):
        self.client.authenticate_user(self.user)
        response = self.client.get(f'/api/v1/audit-logs/{self.other.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.get(f'/api/v1/audit-logs/{self.own.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['action'], 'stock_adjust')

    def test_invalid_date_filter(self):
        self.client.authenticate_user(self.staff)
        response = self.client.get('/api/v1/audit-logs/', {'date_from': 'yesterday'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'validation_error')

    def test_requires_authentication(self):
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class CurrentUserAPITests(TestCase):
    """Test the current-operator endpoint"""

    def setUp(self):
        self.user = TestDataFactory.create_user(username='warehouse_op')
        self.client = AuthenticatedAPIClient()

    def test_me(self):
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/users/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['username'], 'warehouse_op')
        self.assertFalse(response.data['is_staff'])

    def test_invalid_token_rejected(self):
        self.client.credentials(HTTP_AUTHORIZATION='Bearer not-a-token')
        response = self.client.get('/api/v1/users/me/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
