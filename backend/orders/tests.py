"""
Test suite for the orders module
Tests: order building, status machine, fulfillment (scenarios, partial failure,
resume, restock after cancellation) and the order API
"""
import inspect
import threading
import warnings
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.conf import settings
from django.core.management import call_command
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status

from backend.core.exceptions import (
    EmptyCart, InvalidTransition, LinePersistFailed, OrderNotFound,
    PartialFulfillmentError, PersistenceFailed, ValidationError,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.inventory import ledger
from backend.inventory.models import StockMovement, StockRecord
from backend.orders import builder, fulfillment, queries
from backend.orders import status as status_module
from backend.orders.models import Order, OrderLine, OrderStatusLog
from backend.orders.status import allowed_transitions, status_history, transition


def failing_decrement_for(stock_record_id, error=None):
    """Wrap the real ledger decrement so it fails for one stock record"""
    real_decrement = ledger.decrement

    def decrement(record_id, order_id, quantity, actor=None):
        if record_id == stock_record_id:
            raise error or PersistenceFailed("database went away")
        return real_decrement(record_id, order_id, quantity, actor=actor)

    return decrement


class OrderModelTests(TestCase):
    """Test Order and OrderLine model rules"""

    def setUp(self):
        self.product = TestDataFactory.create_product()
        self.order = TestDataFactory.create_order(self.product, quantity=2, buyer_id='buyer-1')

    def test_order_str(self):
        self.assertEqual(str(self.order), f"Order #{self.order.pk}")

    def test_effective_status_defaults_to_processing(self):
        self.assertIsNone(self.order.status)
        self.assertEqual(self.order.effective_status, Order.PROCESSING)

    def test_buyer_is_immutable(self):
        order = Order.objects.get(pk=self.order.pk)
        order.buyer_id = 'someone-else'
        with self.assertRaises(ValueError):
            order.save()

    def test_order_cannot_be_deleted(self):
        with self.assertRaises(ValueError):
            self.order.delete()

    def test_order_line_is_immutable(self):
        line = self.order.lines.get()
        line.amount = 5
        with self.assertRaises(ValueError):
            line.save()


class OrderBuilderTests(TestCase):
    """Test order and line creation from a cart"""

    def setUp(self):
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.medium = TestDataFactory.create_size(self.product, name='M')

    def test_create_order(self):
        cart = [
            TestDataFactory.cart_line(self.product, quantity=3, color=self.red, size=self.medium, unit_price='20.00'),
            TestDataFactory.cart_line(self.product, quantity=1, unit_price='15.50'),
        ]
        order, lines = builder.create_order('buyer-1', cart, shipping_address='1 Main St')
        self.assertEqual(order.buyer_id, 'buyer-1')
        self.assertEqual(order.total_amount, Decimal('75.50'))
        self.assertEqual(order.points_earned, 3)
        self.assertEqual(order.fulfillment_status, Order.FULFILLMENT_PENDING)
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0].variant_key, (self.product.pk, self.red.pk, self.medium.pk))
        self.assertEqual(lines[1].variant_key, (self.product.pk, None, None))
        self.assertTrue(AuditLog.objects.filter(action='order_create', object_id=str(order.pk)).exists())

    def test_empty_cart(self):
        with self.assertRaises(EmptyCart):
            builder.create_order('buyer-1', [])
        self.assertEqual(Order.objects.count(), 0)

    def test_non_positive_quantity(self):
        for quantity in (0, -1, 2.5, None):
            with self.assertRaises(ValidationError):
                builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product, quantity=quantity)])
        self.assertEqual(Order.objects.count(), 0)

    def test_line_requires_product(self):
        with self.assertRaises(ValidationError):
            builder.create_order('buyer-1', [{'quantity': 1}])

    def test_non_finite_amounts_rejected(self):
        for field in ('total_amount', 'discounted_amount'):
            for value in ('NaN', 'Infinity', '-Infinity'):
                with self.assertRaises(ValidationError):
                    builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product)], **{field: value})
        with self.assertRaises(ValidationError):
            builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product, unit_price='NaN')])
        self.assertEqual(Order.objects.count(), 0)

    def test_buyer_required(self):
        with self.assertRaises(ValidationError):
            builder.create_order('', [TestDataFactory.cart_line(self.product)])

    def test_unknown_product(self):
        with self.assertRaises(ValidationError):
            builder.create_order('buyer-1', [{'product_id': 999999, 'quantity': 1}])
        self.assertEqual(Order.objects.count(), 0)

    def test_color_of_other_product(self):
        other = TestDataFactory.create_product()
        other_color = TestDataFactory.create_color(other)
        with self.assertRaises(ValidationError):
            builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product, color=other_color)])
        self.assertEqual(Order.objects.count(), 0)

    def test_accepts_storefront_cart_shape(self):
        order, lines = builder.create_order('buyer-1', [{'id': str(self.product.pk), 'quantity': 2, 'price': '9.99'}])
        self.assertEqual(lines[0].product_id, self.product.pk)
        self.assertEqual(order.total_amount, Decimal('19.98'))

    def test_supplied_total_wins(self):
        order, _ = builder.create_order(
            'buyer-1', [TestDataFactory.cart_line(self.product, quantity=2)],
            total_amount='12.00', discount_type='voucher', discounted_amount='8.00',
        )
        self.assertEqual(order.total_amount, Decimal('12.00'))
        self.assertEqual(order.discounted_amount, Decimal('8.00'))

    def test_negative_total_rejected(self):
        with self.assertRaises(ValidationError):
            builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product)], total_amount='-1')

    def test_discount_floors_total_at_zero(self):
        order, _ = builder.create_order(
            'buyer-1', [TestDataFactory.cart_line(self.product, quantity=1, unit_price='5.00')],
            discounted_amount='9.00',
        )
        self.assertEqual(order.total_amount, Decimal('0.00'))
        self.assertEqual(order.points_earned, 0)

    def test_spent_points_become_discount(self):
        order, _ = builder.create_order(
            'buyer-1', [TestDataFactory.cart_line(self.product, quantity=2, unit_price='25.00')],
            points_spent=500,
        )
        self.assertEqual(order.discounted_amount, Decimal('5.00'))
        self.assertEqual(order.total_amount, Decimal('45.00'))
        self.assertEqual(order.points_spent, 500)
        self.assertEqual(order.points_earned, 0)

    def test_default_points_rate_is_five_percent(self):
        self.assertEqual(settings.POINTS['EARN_PERCENTAGE'], Decimal('0.05'))
        self.assertEqual(builder.points_earned_for(Decimal('100.00')), 5)

    @override_settings(POINTS={'EARN_PERCENTAGE': '0.10', 'POINTS_PER_UNIT': 100})
    def test_points_rate_from_settings(self):
        self.assertEqual(builder.points_earned_for(Decimal('99.99')), 9)

    def test_line_insert_failure_rolls_back_order(self):
        with mock.patch.object(OrderLine.objects, 'create', side_effect=DatabaseError('disk full')):
            with self.assertRaises(LinePersistFailed):
                builder.create_order('buyer-1', [TestDataFactory.cart_line(self.product)])
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderLine.objects.count(), 0)


class OrderStatusMachineTests(TestCase):
    """Test order status transitions and history"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product = TestDataFactory.create_product()
        self.order = TestDataFactory.create_order(self.product)

    def test_module_compiles_without_warnings(self):
        path = inspect.getsourcefile(status_module)
        with open(path, encoding='utf-8') as source, warnings.catch_warnings():
            warnings.simplefilter('error')
            compile(source.read(), path, 'exec')

    def set_status(self, value):
        Order.objects.filter(pk=self.order.pk).update(status=value)

    def test_allowed_transitions(self):
        self.assertEqual(allowed_transitions(None), ['shipped', 'completed', 'cancelled'])
        self.assertEqual(allowed_transitions('pending'), ['processing', 'shipped', 'completed', 'cancelled'])
        self.assertEqual(allowed_transitions('completed'), [])
        self.assertEqual(allowed_transitions('cancelled'), [])

    def test_pending_to_cancelled(self):
        self.set_status(Order.PENDING)
        result = transition(self.order.pk, Order.CANCELLED, actor=self.user, note='Customer request')
        self.assertTrue(result.changed)
        self.assertEqual(result.old_status, Order.PENDING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.CANCELLED)

        log = OrderStatusLog.objects.get(order=self.order)
        self.assertEqual(log.old_status, Order.PENDING)
        self.assertEqual(log.new_status, Order.CANCELLED)
        self.assertEqual(log.actor, self.user)
        self.assertEqual(log.actor_label, self.user.username)
        self.assertEqual(log.note, 'Customer request')

    def test_forward_skip_allowed(self):
        self.set_status(Order.PENDING)
        transition(self.order.pk, Order.SHIPPED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.SHIPPED)

    def test_completed_is_terminal(self):
        self.set_status(Order.COMPLETED)
        for requested in (Order.PENDING, Order.PROCESSING, Order.SHIPPED, Order.CANCELLED):
            with self.assertRaises(InvalidTransition):
                transition(self.order.pk, requested)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.COMPLETED)
        self.assertFalse(OrderStatusLog.objects.filter(order=self.order).exists())

    def test_shipped_to_processing_rejected(self):
        self.set_status(Order.SHIPPED)
        with self.assertRaises(InvalidTransition) as ctx:
            transition(self.order.pk, Order.PROCESSING)
        self.assertEqual(ctx.exception.current, Order.SHIPPED)
        self.assertEqual(ctx.exception.requested, Order.PROCESSING)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.SHIPPED)

    def test_null_status_behaves_as_processing(self):
        with self.assertRaises(InvalidTransition):
            transition(self.order.pk, Order.PENDING)
        result = transition(self.order.pk, Order.SHIPPED)
        self.assertIsNone(result.old_status)
        self.assertEqual(result.new_status, Order.SHIPPED)

    def test_noop_is_accepted_and_logged(self):
        self.set_status(Order.SHIPPED)
        result = transition(self.order.pk, Order.SHIPPED)
        self.assertFalse(result.changed)
        self.assertEqual(OrderStatusLog.objects.filter(order=self.order).count(), 1)
        self.assertFalse(AuditLog.objects.filter(action='order_status').exists())

    @override_settings(ORDERS={'LOG_NOOP_TRANSITIONS': False})
    def test_noop_not_logged_when_disabled(self):
        self.set_status(Order.SHIPPED)
        transition(self.order.pk, Order.SHIPPED)
        self.assertFalse(OrderStatusLog.objects.filter(order=self.order).exists())

    def test_unknown_status(self):
        with self.assertRaises(ValidationError):
            transition(self.order.pk, 'returned')

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            transition(999999, Order.SHIPPED)
        with self.assertRaises(OrderNotFound):
            status_history(999999)

    def test_history_oldest_first(self):
        self.set_status(Order.PENDING)
        transition(self.order.pk, Order.PROCESSING)
        transition(self.order.pk, Order.SHIPPED, actor=self.user)
        transition(self.order.pk, Order.COMPLETED)
        history = status_history(self.order.pk)
        self.assertEqual([log.new_status for log in history], ['processing', 'shipped', 'completed'])
        self.assertEqual(history[0].actor_label, 'system')

    def test_cancel_after_decrement_flags_restock(self):
        record = TestDataFactory.create_stock_record(self.product, available=5)
        ledger.decrement(record.pk, self.order.pk, 1)
        result = transition(self.order.pk, Order.CANCELLED)
        self.assertTrue(result.restock_pending)
        record.refresh_from_db()
        self.assertEqual(record.available, 4)


class FulfillmentScenarioTests(TestCase):
    """Place-order scenarios against real stock records"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.p1 = TestDataFactory.create_product(name='P1')
        self.red = TestDataFactory.create_color(self.p1, name='Red')
        self.medium = TestDataFactory.create_size(self.p1, name='M')

    def test_scenario_a_in_stock(self):
        record = TestDataFactory.create_stock_record(self.p1, color=self.red, size=self.medium, available=10)
        cart = [TestDataFactory.cart_line(self.p1, quantity=3, color=self.red, size=self.medium)]
        result = fulfillment.place_order('buyer-1', cart, actor=self.user)

        self.assertTrue(result.fully_reserved)
        self.assertEqual(result.total_shortfall, 0)
        self.assertEqual(result.order.fulfillment_status, Order.FULFILLMENT_RESERVED)
        record.refresh_from_db()
        self.assertEqual(record.available, 7)

        movements = StockMovement.objects.filter(order=result.order)
        self.assertEqual(movements.count(), 1)
        self.assertEqual(movements[0].amount, 3)
        self.assertEqual(movements[0].movement_type, StockMovement.DECREMENT)

    def test_scenario_b_shortfall_clamps(self):
        record = TestDataFactory.create_stock_record(self.p1, color=self.red, size=self.medium, available=2)
        cart = [TestDataFactory.cart_line(self.p1, quantity=3, color=self.red, size=self.medium)]
        result = fulfillment.place_order('buyer-1', cart)

        self.assertTrue(Order.objects.filter(pk=result.order.pk).exists())
        self.assertTrue(result.fully_reserved)
        self.assertEqual(result.total_shortfall, 1)
        self.assertEqual(result.line_results[0].decremented, 2)
        record.refresh_from_db()
        self.assertEqual(record.available, 0)

    def test_scenario_c_unknown_variant_created_at_zero(self):
        p2 = TestDataFactory.create_product(name='P2')
        result = fulfillment.place_order('buyer-1', [TestDataFactory.cart_line(p2, quantity=2)])

        record = StockRecord.objects.get(product=p2, color__isnull=True, size__isnull=True)
        self.assertEqual(record.available, 0)
        self.assertEqual(result.line_results[0].stock_record_id, record.pk)
        self.assertEqual(result.line_results[0].shortfall, 2)
        self.assertTrue(ledger.verify_record(record))

    def test_scenario_d_competing_orders_never_oversell(self):
        record = TestDataFactory.create_stock_record(self.p1, available=10)
        cart = [TestDataFactory.cart_line(self.p1, quantity=6)]
        first = fulfillment.place_order('buyer-1', cart)
        second = fulfillment.place_order('buyer-2', cart)

        self.assertEqual(first.line_results[0].decremented, 6)
        self.assertEqual(second.line_results[0].decremented, 4)
        self.assertEqual(second.total_shortfall, 2)
        record.refresh_from_db()
        self.assertEqual(record.available, 0)
        self.assertEqual(ledger.movement_total(record.pk), 0)

    def test_lines_sharing_a_variant_decrement_together(self):
        record = TestDataFactory.create_stock_record(self.p1, color=self.red, available=10)
        cart = [
            TestDataFactory.cart_line(self.p1, quantity=2, color=self.red),
            TestDataFactory.cart_line(self.p1, quantity=3, color=self.red),
        ]
        result = fulfillment.place_order('buyer-1', cart)

        self.assertEqual(len(result.lines), 2)
        self.assertEqual(len(result.line_results), 1)
        self.assertEqual(result.line_results[0].requested, 5)
        self.assertEqual(result.line_results[0].line_ids, [line.pk for line in result.lines])
        record.refresh_from_db()
        self.assertEqual(record.available, 5)

    def test_empty_cart_writes_nothing(self):
        with self.assertRaises(EmptyCart):
            fulfillment.place_order('buyer-1', [])
        self.assertEqual(Order.objects.count(), 0)


class PartialFulfillmentTests(TestCase):
    """Partial failure, resume and restock of cancelled orders"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.blue = TestDataFactory.create_color(self.product, name='Blue')
        self.red_stock = TestDataFactory.create_stock_record(self.product, color=self.red, available=10)
        self.blue_stock = TestDataFactory.create_stock_record(self.product, color=self.blue, available=10)
        self.cart = [
            TestDataFactory.cart_line(self.product, quantity=2, color=self.red),
            TestDataFactory.cart_line(self.product, quantity=3, color=self.blue),
        ]

    def place_with_blue_failing(self):
        with mock.patch.object(ledger, 'decrement', side_effect=failing_decrement_for(self.blue_stock.pk)):
            with self.assertRaises(PartialFulfillmentError) as ctx:
                fulfillment.place_order('buyer-1', self.cart, actor=self.user)
        return ctx.exception

    def test_partial_failure_is_reported(self):
        error = self.place_with_blue_failing()
        order = Order.objects.get(pk=error.order.pk)
        red_line, blue_line = order.lines.all()

        self.assertEqual(error.completed_line_ids, [red_line.pk])
        self.assertEqual(error.outstanding_line_ids, [blue_line.pk])
        self.assertIsInstance(error.cause, PersistenceFailed)
        self.assertEqual(len(error.line_results), 1)
        self.assertEqual(order.fulfillment_status, Order.FULFILLMENT_PARTIAL)
        self.assertFalse(order.is_fully_reserved)
        self.assertEqual(error.to_response_data()['details']['cause'], 'persistence_failed')

        self.red_stock.refresh_from_db()
        self.blue_stock.refresh_from_db()
        self.assertEqual(self.red_stock.available, 8)
        self.assertEqual(self.blue_stock.available, 10)
        self.assertTrue(AuditLog.objects.filter(action='order_partial', object_id=str(order.pk)).exists())
        self.assertIn(order, queries.outstanding_orders())

    def test_resume_completes_without_double_decrement(self):
        error = self.place_with_blue_failing()
        result = fulfillment.resume_fulfillment(error.order.pk, actor=self.user)

        self.assertTrue(result.fully_reserved)
        self.assertEqual([r.replayed for r in result.line_results], [True, False])
        self.red_stock.refresh_from_db()
        self.blue_stock.refresh_from_db()
        self.assertEqual(self.red_stock.available, 8)
        self.assertEqual(self.blue_stock.available, 7)
        self.assertEqual(Order.objects.get(pk=error.order.pk).fulfillment_status, Order.FULFILLMENT_RESERVED)
        self.assertEqual(StockMovement.objects.filter(order=error.order, movement_type='decrement').count(), 2)

    def test_resume_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            fulfillment.resume_fulfillment(999999)

    def test_resume_cancelled_order_rejected(self):
        error = self.place_with_blue_failing()
        transition(error.order.pk, Order.CANCELLED)
        with self.assertRaises(ValidationError):
            fulfillment.resume_fulfillment(error.order.pk)

    def test_restock_cancelled_order(self):
        result = fulfillment.place_order('buyer-1', self.cart)
        transition(result.order.pk, Order.CANCELLED, actor=self.user)

        restocked = fulfillment.restock_cancelled_order(result.order.pk, actor=self.user)
        self.assertEqual(sorted(r.applied for r in restocked), [2, 3])
        self.red_stock.refresh_from_db()
        self.blue_stock.refresh_from_db()
        self.assertEqual(self.red_stock.available, 10)
        self.assertEqual(self.blue_stock.available, 10)
        self.assertTrue(AuditLog.objects.filter(action='order_restock').exists())

        again = fulfillment.restock_cancelled_order(result.order.pk)
        self.assertTrue(all(r.replayed for r in again))
        self.red_stock.refresh_from_db()
        self.assertEqual(self.red_stock.available, 10)
        self.assertEqual(list(ledger.find_discrepancies()), [])

    def test_restock_returns_only_applied_amount(self):
        StockRecord.objects.filter(pk=self.red_stock.pk).update(available=1)
        result = fulfillment.place_order('buyer-1', self.cart)
        transition(result.order.pk, Order.CANCELLED)
        fulfillment.restock_cancelled_order(result.order.pk)
        self.red_stock.refresh_from_db()
        self.assertEqual(self.red_stock.available, 1)

    def test_restock_requires_cancelled_order(self):
        result = fulfillment.place_order('buyer-1', self.cart)
        with self.assertRaises(ValidationError):
            fulfillment.restock_cancelled_order(result.order.pk)

    def test_fix_flags_marks_reserved_orders(self):
        error = self.place_with_blue_failing()
        ledger.decrement(self.blue_stock.pk, error.order.pk, 3)

        out = StringIO()
        call_command('check_stock_ledger', '--fix-flags', stdout=out)
        self.assertIn('marked reserved', out.getvalue())
        self.assertEqual(Order.objects.get(pk=error.order.pk).fulfillment_status, Order.FULFILLMENT_RESERVED)

    def test_partial_orders_listed_without_fix(self):
        error = self.place_with_blue_failing()
        out = StringIO()
        call_command('check_stock_ledger', stdout=out)
        self.assertIn(str(error.order), out.getvalue())
        self.assertIn('still need resume-fulfillment', out.getvalue())


class ConcurrentPlaceOrderTests(TransactionTestCase):
    """Two buyers racing for the same stock"""

    def test_total_decremented_never_exceeds_stock(self):
        product = TestDataFactory.create_product()
        record = TestDataFactory.create_stock_record(product, available=10)
        cart = [TestDataFactory.cart_line(product, quantity=6)]
        results = []
        errors = []

        def place(buyer_id):
            try:
                results.append(fulfillment.place_order(buyer_id, cart))
            except Exception as e:  # collected and asserted below
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=place, args=(f'buyer-{i}',)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        record.refresh_from_db()
        self.assertEqual(record.available, 0)
        self.assertEqual(sum(r.line_results[0].decremented for r in results), 10)


class OrderAPITests(TestCase):
    """Test order API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.product = TestDataFactory.create_product()
        self.red = TestDataFactory.create_color(self.product, name='Red')
        self.record = TestDataFactory.create_stock_record(self.product, color=self.red, available=10)

    def place(self, quantity=3, **extra):
        data = {
            'buyer_id': 'buyer-1',
            'shipping_address': '1 Main St',
            'items': [TestDataFactory.cart_line(self.product, quantity=quantity, color=self.red)],
        }
        data.update(extra)
        return self.client.post('/api/v1/orders/', data, format='json')

    def test_requires_authentication(self):
        self.client.logout()
        response = self.client.get('/api/v1/orders/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_place_order(self):
        response = self.place()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['fully_reserved'])
        self.assertEqual(response.data['order']['fulfillment_status'], 'reserved')
        self.assertEqual(response.data['order']['status'], 'processing')
        self.assertEqual(response.data['order']['total_amount'], '30.00')
        self.assertEqual(response.data['order']['points_earned'], 1)
        self.assertEqual(len(response.data['order']['lines']), 1)
        self.assertEqual(response.data['line_results'][0]['decremented'], 3)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 7)

    def test_place_order_reports_shortfall(self):
        response = self.place(quantity=12)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['total_shortfall'], 2)

    def test_place_order_empty_cart(self):
        response = self.place(items=[])
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'empty_cart')
        self.assertEqual(response.data['message'], 'Cart is empty.')

    def test_place_order_invalid_quantity(self):
        response = self.place(quantity=0)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(Order.objects.count(), 0)

    def test_place_order_partial(self):
        with mock.patch.object(ledger, 'decrement', side_effect=failing_decrement_for(self.record.pk)):
            response = self.place()
        self.assertEqual(response.status_code, status.HTTP_207_MULTI_STATUS)
        self.assertEqual(response.data['error'], 'partial_fulfillment')
        self.assertFalse(response.data['fully_reserved'])
        self.assertEqual(response.data['order']['fulfillment_status'], 'partial')
        self.assertFalse(response.data['order']['fully_reserved'])
        self.assertEqual(len(response.data['details']['outstanding_line_ids']), 1)

        order_id = response.data['order']['id']
        response = self.client.post(f'/api/v1/orders/{order_id}/resume-fulfillment/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['fully_reserved'])
        self.assertTrue(response.data['order']['fully_reserved'])

    def test_list_orders(self):
        self.place()
        self.place(buyer_id='buyer-2')
        response = self.client.get('/api/v1/orders/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

        response = self.client.get('/api/v1/orders/', {'buyer': 'buyer-2'})
        self.assertEqual(response.data['count'], 1)

        response = self.client.get('/api/v1/orders/', {'status': 'processing'})
        self.assertEqual(response.data['count'], 2)

        response = self.client.get('/api/v1/orders/', {'fulfillment_status': 'partial'})
        self.assertEqual(response.data['count'], 0)

    def test_list_orders_bad_filters(self):
        response = self.client.get('/api/v1/orders/', {'status': 'lost'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        response = self.client.get('/api/v1/orders/', {'date_from': 'yesterday'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_order_detail(self):
        order_id = self.place().data['order']['id']
        response = self.client.get(f'/api/v1/orders/{order_id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['lines'][0]['color_name'], 'Red')
        self.assertEqual(response.data['allowed_transitions'], ['shipped', 'completed', 'cancelled'])

    def test_order_detail_not_found(self):
        response = self.client.get('/api/v1/orders/999999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'order_not_found')

    def test_status_update_and_history(self):
        order_id = self.place().data['order']['id']
        response = self.client.post(f'/api/v1/orders/{order_id}/status/', {'status': 'shipped', 'note': 'Courier'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['changed'])
        self.assertEqual(response.data['order']['status'], 'shipped')

        response = self.client.post(f'/api/v1/orders/{order_id}/status/', {'status': 'processing'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'invalid_transition')

        response = self.client.get(f'/api/v1/orders/{order_id}/status-history/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['new_status'], 'shipped')
        self.assertEqual(response.data[0]['actor_label'], self.user.username)

    def test_status_update_invalid_value(self):
        order_id = self.place().data['order']['id']
        response = self.client.post(f'/api/v1/orders/{order_id}/status/', {'status': 'lost'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cancel_and_restock(self):
        order_id = self.place().data['order']['id']
        response = self.client.post(f'/api/v1/orders/{order_id}/status/', {'status': 'cancelled'}, format='json')
        self.assertTrue(response.data['restock_pending'])

        response = self.client.post(f'/api/v1/orders/{order_id}/restock/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['restocked'][0]['quantity'], 3)
        self.record.refresh_from_db()
        self.assertEqual(self.record.available, 10)

    def test_restock_active_order_rejected(self):
        order_id = self.place().data['order']['id']
        response = self.client.post(f'/api/v1/orders/{order_id}/restock/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
