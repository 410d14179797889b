"""
Test suite for the inventory module
Tests: variant resolution, stock ledger (clamping, idempotency, compare-and-swap),
movement log audit law, stock API and the ledger audit command
"""
import threading
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.db import OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from hypothesis import given, settings, strategies as st
from hypothesis.extra.django import TestCase as HypothesisTestCase
from rest_framework import status

from backend.core.exceptions import (
    ConcurrencyError, CreateFailed, LookupFailed, PersistenceFailed, RecordNotFound, ValidationError,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.inventory import ledger, resolver
from backend.inventory.models import StockMovement, StockRecord


class StockRecordModelTests(TestCase):
    """Test StockRecord and StockMovement model rules"""

    def setUp(self):
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.medium = TestDataFactory.create_size(self.product, name='M')

    def test_stock_record_str(self):
        """Test stock record string representation"""
        record = TestDataFactory.create_stock_record(self.product, color=self.red, size=self.medium, available=4)
        self.assertEqual(str(record), f"{self.product.name} / Red / M: 4")

    def test_stock_record_cannot_be_deleted(self):
        record = TestDataFactory.create_stock_record(self.product)
        with self.assertRaises(ValueError):
            record.delete()
        self.assertTrue(StockRecord.objects.filter(pk=record.pk).exists())

    def test_stock_record_rejects_color_of_other_product(self):
        other = TestDataFactory.create_product()
        other_color = TestDataFactory.create_color(other)
        with self.assertRaises(ValidationError):
            resolver.resolve_stock_record(self.product.pk, other_color.pk, None)
        self.assertFalse(StockRecord.objects.filter(product=self.product).exists())

    def test_movement_is_append_only(self):
        record = TestDataFactory.create_stock_record(self.product, available=5)
        movement = record.movements.get()
        movement.note = 'changed'
        with self.assertRaises(ValueError):
            movement.save()
        with self.assertRaises(ValueError):
            movement.delete()

    def test_movement_shortfall(self):
        record = TestDataFactory.create_stock_record(self.product, available=2)
        order = TestDataFactory.create_order(self.product, quantity=5)
        ledger.decrement(record.pk, order.pk, 5)
        movement = record.movements.get(movement_type=StockMovement.DECREMENT)
        self.assertEqual(movement.amount, 5)
        self.assertEqual(movement.applied, -2)
        self.assertEqual(movement.shortfall, 3)


class VariantResolverTests(TestCase):
    """Test exact-match variant lookup and lazy provisioning"""

    def setUp(self):
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.medium = TestDataFactory.create_size(self.product, name='M')

    def test_resolve_existing_record(self):
        record = TestDataFactory.create_stock_record(self.product, color=self.red, size=self.medium, available=3)
        resolved = resolver.resolve_stock_record(self.product.pk, self.red.pk, self.medium.pk)
        self.assertEqual(resolved.pk, record.pk)

    def test_absent_axis_does_not_match_any_value(self):
        """color_id=None matches only records without a color"""
        TestDataFactory.create_stock_record(self.product, color=self.red, size=self.medium, available=3)
        self.assertIsNone(resolver.find_stock_record(self.product.pk, None, self.medium.pk))
        resolved = resolver.resolve_stock_record(self.product.pk, None, self.medium.pk)
        self.assertIsNone(resolved.color_id)
        self.assertEqual(resolved.size_id, self.medium.pk)
        self.assertEqual(resolved.available, 0)
        self.assertEqual(StockRecord.objects.filter(product=self.product).count(), 2)

    def test_missing_record_is_created_at_zero(self):
        record = resolver.resolve_stock_record(self.product.pk)
        self.assertEqual(record.available, 0)
        self.assertIsNone(record.color_id)
        self.assertIsNone(record.size_id)
        self.assertEqual(resolver.resolve_stock_record(self.product.pk).pk, record.pk)
        self.assertEqual(StockRecord.objects.filter(product=self.product).count(), 1)

    def test_product_id_required(self):
        with self.assertRaises(ValidationError):
            resolver.resolve_stock_record(None)
        with self.assertRaises(ValidationError):
            resolver.resolve_stock_record('  ')

    def test_unknown_product_is_rejected(self):
        with self.assertRaises(ValidationError):
            resolver.resolve_stock_record(999999)

    def test_lost_create_race_returns_winner(self):
        """A duplicate insert falls back to the row the other caller created"""
        winner = StockRecord.objects.create(product=self.product, color=self.red, available=0)
        with mock.patch.object(resolver, 'find_stock_record', side_effect=[None, winner]):
            resolved = resolver.resolve_stock_record(self.product.pk, self.red.pk, None)
        self.assertEqual(resolved.pk, winner.pk)
        self.assertEqual(StockRecord.objects.filter(product=self.product).count(), 1)

    def test_lost_create_race_without_winner_fails(self):
        StockRecord.objects.create(product=self.product, available=0)
        with mock.patch.object(resolver, 'find_stock_record', return_value=None):
            with self.assertRaises(CreateFailed):
                resolver.resolve_stock_record(self.product.pk)

    def test_lookup_database_error(self):
        from django.db import DatabaseError
        with mock.patch.object(StockRecord.objects, 'filter', side_effect=DatabaseError('connection lost')):
            with self.assertRaises(LookupFailed):
                resolver.find_stock_record(self.product.pk)

    def test_provision_with_opening_count_balances_ledger(self):
        record = resolver.provision_stock_record(self.product.pk, self.red.pk, None, opening_count=12)
        self.assertEqual(record.available, 12)
        movement = record.movements.get()
        self.assertEqual(movement.movement_type, StockMovement.INCREMENT)
        self.assertEqual(movement.applied, 12)
        self.assertTrue(ledger.verify_record(record))
        self.assertTrue(AuditLog.objects.filter(action='stock_provision', object_id=str(record.pk)).exists())

    def test_provision_rejects_negative_opening_count(self):
        with self.assertRaises(ValidationError):
            resolver.provision_stock_record(self.product.pk, opening_count=-1)


class StockLedgerTests(TestCase):
    """Test decrement, increment and adjust on the stock ledger"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product = TestDataFactory.create_product()
        self.record = TestDataFactory.create_stock_record(self.product, available=10)
        self.order = TestDataFactory.create_order(self.product, quantity=3)

    def test_decrement(self):
        result = ledger.decrement(self.record.pk, self.order.pk, 3, actor=self.user)
        self.assertEqual(result.available, 7)
        self.assertEqual(result.decremented, 3)
        self.assertEqual(result.shortfall, 0)
        self.assertFalse(result.replayed)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 7)

        movement = StockMovement.objects.get(pk=result.movement_id)
        self.assertEqual(movement.movement_type, StockMovement.DECREMENT)
        self.assertEqual(movement.amount, 3)
        self.assertEqual(movement.applied, -3)
        self.assertEqual(movement.order_id, self.order.pk)
        self.assertEqual(movement.actor, self.user)
        self.assertEqual(movement.idempotency_key, f"order:{self.order.pk}:stock:{self.record.pk}")

    def test_decrement_clamps_at_zero(self):
        result = ledger.decrement(self.record.pk, self.order.pk, 15)
        self.assertEqual(result.available, 0)
        self.assertEqual(result.decremented, 10)
        self.assertEqual(result.shortfall, 5)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 0)

    def test_decrement_replay_does_not_double_decrement(self):
        first = ledger.decrement(self.record.pk, self.order.pk, 3)
        second = ledger.decrement(self.record.pk, self.order.pk, 3)
        self.assertTrue(second.replayed)
        self.assertEqual(second.movement_id, first.movement_id)
        self.assertEqual(second.available, 7)
        self.assertEqual(self.record.movements.filter(movement_type=StockMovement.DECREMENT).count(), 1)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 7)

    def test_decrement_rejects_non_positive_quantity(self):
        for quantity in (0, -2, 1.5, True, '3'):
            with self.assertRaises(ValidationError):
                ledger.decrement(self.record.pk, self.order.pk, quantity)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 10)

    def test_decrement_requires_order(self):
        with self.assertRaises(ValidationError):
            ledger.decrement(self.record.pk, None, 1)

    def test_decrement_unknown_record(self):
        with self.assertRaises(RecordNotFound):
            ledger.decrement(999999, self.order.pk, 1)

    def test_decrement_writes_audit_log(self):
        ledger.decrement(self.record.pk, self.order.pk, 2, actor=self.user)
        log = AuditLog.objects.get(action='stock_sale')
        self.assertEqual(log.user, self.user)
        self.assertEqual(log.object_reference, f"Order #{self.order.pk}")
        self.assertEqual(log.changes['decremented'], 2)

    def test_lost_compare_and_swap_is_retried(self):
        real_update = ledger._conditional_update
        calls = []

        def flaky_update(*args):
            calls.append(args)
            if len(calls) == 1:
                return 0
            return real_update(*args)

        with mock.patch.object(ledger, '_conditional_update', side_effect=flaky_update):
            result = ledger.decrement(self.record.pk, self.order.pk, 4)

        self.assertEqual(len(calls), 2)
        self.assertEqual(result.available, 6)
        self.assertEqual(self.record.movements.filter(movement_type=StockMovement.DECREMENT).count(), 1)

    @override_settings(INVENTORY_LEDGER={'CAS_MAX_ATTEMPTS': 2})
    def test_exhausted_retries_raise_concurrency_error(self):
        with mock.patch.object(ledger, '_conditional_update', return_value=0) as update:
            with self.assertRaises(ConcurrencyError):
                ledger.decrement(self.record.pk, self.order.pk, 4)
        self.assertEqual(update.call_count, 2)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 10)
        self.assertFalse(self.record.movements.filter(movement_type=StockMovement.DECREMENT).exists())

    def test_locked_database_is_retried(self):
        real_update = ledger._conditional_update
        calls = []

        def locked_once(*args):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError('database table is locked: product_stock')
            return real_update(*args)

        with mock.patch.object(ledger, '_conditional_update', side_effect=locked_once):
            result = ledger.decrement(self.record.pk, self.order.pk, 4)

        self.assertEqual(len(calls), 2)
        self.assertEqual(result.available, 6)
        self.assertEqual(ledger.movement_total(self.record.pk), 6)

    @override_settings(INVENTORY_LEDGER={'CAS_MAX_ATTEMPTS': 2})
    def test_database_that_stays_locked_raises_concurrency_error(self):
        with mock.patch.object(ledger, '_conditional_update',
                               side_effect=OperationalError('database is locked')) as update:
            with self.assertRaises(ConcurrencyError):
                ledger.decrement(self.record.pk, self.order.pk, 4)
        self.assertEqual(update.call_count, 2)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 10)

    def test_other_operational_error_is_persistence_failure(self):
        with mock.patch.object(ledger, '_conditional_update',
                               side_effect=OperationalError('disk I/O error')) as update:
            with self.assertRaises(PersistenceFailed):
                ledger.decrement(self.record.pk, self.order.pk, 4)
        self.assertEqual(update.call_count, 1)

    def test_increment(self):
        result = ledger.increment(self.record.pk, 5, actor=self.user, note='Supplier delivery')
        self.assertEqual(result.available, 15)
        self.assertEqual(result.applied, 5)
        movement = StockMovement.objects.get(pk=result.movement_id)
        self.assertEqual(movement.movement_type, StockMovement.INCREMENT)
        self.assertEqual(movement.note, 'Supplier delivery')
        self.assertTrue(AuditLog.objects.filter(action='stock_purchase', object_id=str(self.record.pk)).exists())

    def test_increment_with_key_is_idempotent(self):
        ledger.increment(self.record.pk, 5, idempotency_key='restock:1:stock:1')
        replay = ledger.increment(self.record.pk, 5, idempotency_key='restock:1:stock:1')
        self.assertTrue(replay.replayed)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 15)

    def test_adjust_down_clamps_at_zero(self):
        result = ledger.adjust(self.record.pk, -25, actor=self.user, note='Stocktake')
        self.assertEqual(result.available, 0)
        self.assertEqual(result.applied, -10)
        self.assertEqual(result.requested, 25)
        self.assertTrue(ledger.verify_record(StockRecord.objects.get(pk=self.record.pk)))

    def test_adjust_rejects_zero(self):
        with self.assertRaises(ValidationError):
            ledger.adjust(self.record.pk, 0)

    def test_movement_law_after_mixed_operations(self):
        ledger.decrement(self.record.pk, self.order.pk, 4)
        ledger.increment(self.record.pk, 3)
        ledger.adjust(self.record.pk, -2)
        other_order = TestDataFactory.create_order(self.product, quantity=50)
        ledger.decrement(self.record.pk, other_order.pk, 50)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 0)
        self.assertEqual(ledger.movement_total(self.record.pk), 0)
        self.assertEqual(list(ledger.find_discrepancies()), [])


class StockLedgerPropertyTests(HypothesisTestCase):
    """Property: any sequence of ledger operations keeps stock non-negative and the log balanced"""

    operation = st.one_of(
        st.tuples(st.just('decrement'), st.integers(min_value=1, max_value=30)),
        st.tuples(st.just('increment'), st.integers(min_value=1, max_value=30)),
        st.tuples(st.just('adjust'), st.integers(min_value=-30, max_value=30).filter(bool)),
    )

    @given(
        opening=st.integers(min_value=0, max_value=50),
        operations=st.lists(operation, min_size=1, max_size=15),
    )
    @settings(max_examples=30, deadline=None)
    def test_stock_never_negative_and_log_balances(self, opening, operations):
        product = TestDataFactory.create_product()
        record = TestDataFactory.create_stock_record(product, available=opening)
        expected = opening

        for kind, amount in operations:
            if kind == 'decrement':
                order = TestDataFactory.create_order(product, quantity=amount)
                result = ledger.decrement(record.pk, order.pk, amount)
                expected = max(0, expected - amount)
            elif kind == 'increment':
                result = ledger.increment(record.pk, amount)
                expected += amount
            else:
                result = ledger.adjust(record.pk, amount)
                expected = max(0, expected + amount)

            self.assertGreaterEqual(result.available, 0)
            self.assertEqual(result.available, expected)

        record.refresh_from_db()
        self.assertEqual(record.available, expected)
        self.assertEqual(ledger.movement_total(record.pk), record.available)


class ConcurrentDecrementTests(TransactionTestCase):
    """Real concurrent decrements against one stock record"""

    def test_oversubscribed_record_ends_at_zero(self):
        product = TestDataFactory.create_product()
        record = TestDataFactory.create_stock_record(product, available=10)
        orders = [TestDataFactory.create_order(product, quantity=3) for _ in range(8)]
        results = []
        errors = []

        def take(order):
            try:
                results.append(ledger.decrement(record.pk, order.pk, 3))
            except Exception as e:  # collected and asserted below
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=take, args=(order,)) for order in orders]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        record.refresh_from_db()
        self.assertEqual(record.available, 0)
        self.assertEqual(sum(result.decremented for result in results), 10)
        self.assertEqual(ledger.movement_total(record.pk), 0)


class StockAPITests(TestCase):
    """Test stock API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.record = TestDataFactory.create_stock_record(self.product, color=self.red, available=5)

    def test_requires_authentication(self):
        self.client.logout()
        response = self.client.get('/api/v1/stock/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_list_stock(self):
        TestDataFactory.create_stock_record(self.product, available=0)
        response = self.client.get('/api/v1/stock/', {'product_id': self.product.pk})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

    def test_list_stock_filters(self):
        empty = TestDataFactory.create_stock_record(self.product, available=0)
        response = self.client.get('/api/v1/stock/', {'out_of_stock': 'true'})
        self.assertEqual([row['id'] for row in response.data['results']], [empty.pk])

        response = self.client.get('/api/v1/stock/', {'color_id': 'none'})
        self.assertEqual([row['id'] for row in response.data['results']], [empty.pk])

        response = self.client.get('/api/v1/stock/', {'color_id': self.red.pk})
        self.assertEqual([row['id'] for row in response.data['results']], [self.record.pk])

    def test_list_stock_rejects_bad_filter(self):
        response = self.client.get('/api/v1/stock/', {'product_id': 'abc'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_stock_detail(self):
        response = self.client.get(f'/api/v1/stock/{self.record.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['available'], 5)
        self.assertEqual(response.data['color_name'], 'Red')
        self.assertTrue(response.data['balanced'])

    def test_stock_detail_not_found(self):
        response = self.client.get('/api/v1/stock/999999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_provision(self):
        size = TestDataFactory.create_size(self.product, name='L')
        data = {'product_id': self.product.pk, 'color_id': self.red.pk, 'size_id': size.pk, 'opening_count': 7}
        response = self.client.post('/api/v1/stock/provision/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['available'], 7)

        response = self.client.post('/api/v1/stock/provision/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(StockRecord.objects.filter(product=self.product, size=size).count(), 1)

    def test_provision_unknown_product(self):
        response = self.client.post('/api/v1/stock/provision/', {'product_id': 999999}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'validation_error')

    def test_increment(self):
        response = self.client.post(f'/api/v1/stock/{self.record.pk}/increment/', {'quantity': 4, 'note': 'Delivery'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['available'], 9)
        self.assertEqual(response.data['movement_type'], 'increment')
        self.assertEqual(response.data['actor_username'], self.user.username)

    def test_increment_rejects_zero(self):
        response = self.client.post(f'/api/v1/stock/{self.record.pk}/increment/', {'quantity': 0}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_increment_unknown_record(self):
        response = self.client.post('/api/v1/stock/999999/increment/', {'quantity': 1}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'stock_record_not_found')

    def test_adjust(self):
        response = self.client.post(f'/api/v1/stock/{self.record.pk}/adjust/', {'delta': -8}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['available'], 0)
        self.assertEqual(response.data['applied'], -5)

    def test_adjust_rejects_zero(self):
        response = self.client.post(f'/api/v1/stock/{self.record.pk}/adjust/', {'delta': 0}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_movements(self):
        ledger.increment(self.record.pk, 2)
        response = self.client.get(f'/api/v1/stock/{self.record.pk}/movements/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual([row['applied'] for row in response.data['results']], [5, 2])

    def test_movement_list_filters(self):
        order = TestDataFactory.create_order(self.product, quantity=2, color=self.red)
        ledger.decrement(self.record.pk, order.pk, 2)
        response = self.client.get('/api/v1/stock-movements/', {'order_id': order.pk})
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['movement_type'], 'decrement')

        response = self.client.get('/api/v1/stock-movements/', {'movement_type': 'increment'})
        self.assertEqual(response.data['count'], 1)


class CheckStockLedgerCommandTests(TestCase):
    """Test the check_stock_ledger management command"""

    def setUp(self):
        self.product = TestDataFactory.create_product()
        self.record = TestDataFactory.create_stock_record(self.product, available=6)

    def test_balanced_ledger(self):
        order = TestDataFactory.create_order(self.product, quantity=2)
        ledger.decrement(self.record.pk, order.pk, 2)
        out = StringIO()
        call_command('check_stock_ledger', stdout=out)
        self.assertIn('No ledger discrepancies found', out.getvalue())
        self.assertIn('No partially fulfilled orders', out.getvalue())

    def test_reports_discrepancy(self):
        # Bypass the ledger on purpose
        StockRecord.objects.filter(pk=self.record.pk).update(available=9)
        out = StringIO()
        call_command('check_stock_ledger', '--show-all', stdout=out)
        output = out.getvalue()
        self.assertIn('do not add up: 1', output)
        self.assertIn('MISMATCH', output)
        self.assertIn('diff +3', output)

    def test_product_filter(self):
        other = TestDataFactory.create_product()
        other_record = TestDataFactory.create_stock_record(other, available=1)
        StockRecord.objects.filter(pk=other_record.pk).update(available=4)
        out = StringIO()
        call_command('check_stock_ledger', '--product-id', str(self.product.pk), stdout=out)
        self.assertIn('No ledger discrepancies found', out.getvalue())
