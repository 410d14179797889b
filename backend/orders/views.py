from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from backend.core.exceptions import FulfillmentError, PartialFulfillmentError
from backend.core.utils import paginated_response_data
from . import fulfillment, queries
from .serializers import (
    OrderSerializer, OrderStatusLogSerializer, PlaceOrderSerializer, StatusChangeSerializer,
)
from .status import allowed_transitions, status_history, transition


def _error_response(error):
    return Response(error.to_response_data(), status=error.http_status)


def _fulfillment_data(result):
    return {
        'order': OrderSerializer(result.order).data,
        'fully_reserved': result.fully_reserved,
        'total_shortfall': result.total_shortfall,
        'line_results': [line.to_dict() for line in result.line_results],
    }


def _partial_data(error):
    data = error.to_response_data()
    data['order'] = OrderSerializer(queries.get_order(error.order.pk)).data
    data['fully_reserved'] = False
    data['line_results'] = [line.to_dict() for line in error.line_results]
    return data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def order_list_create(request):
    """List orders or place a new order from a cart"""
    if request.method == 'GET':
        try:
            queryset = queries.list_orders(
                status=request.query_params.get('status'),
                buyer=request.query_params.get('buyer'),
                fulfillment_status=request.query_params.get('fulfillment_status'),
                date_from=request.query_params.get('date_from'),
                date_to=request.query_params.get('date_to'),
            )
        except FulfillmentError as e:
            return _error_response(e)
        return Response(paginated_response_data(request, queryset, OrderSerializer))

    serializer = PlaceOrderSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = dict(serializer.validated_data)
    buyer_id = data.pop('buyer_id')
    items = data.pop('items')
    order_fields = {key: value for key, value in data.items() if value not in (None, '')}

    try:
        result = fulfillment.place_order(buyer_id, items, actor=request.user, **order_fields)
    except PartialFulfillmentError as e:
        return Response(_partial_data(e), status=e.http_status)
    except FulfillmentError as e:
        return _error_response(e)

    return Response(_fulfillment_data(result), status=status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def order_detail(request, pk):
    """Retrieve an order with its lines"""
    try:
        order = queries.get_order(pk)
    except FulfillmentError as e:
        return _error_response(e)
    data = OrderSerializer(order).data
    data['allowed_transitions'] = allowed_transitions(order.status)
    return Response(data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def order_status_update(request, pk):
    """Move an order to a new status"""
    serializer = StatusChangeSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = transition(
            pk,
            serializer.validated_data['status'],
            actor=request.user,
            note=serializer.validated_data.get('note', ''),
        )
    except FulfillmentError as e:
        return _error_response(e)

    return Response({
        'order': OrderSerializer(queries.get_order(pk)).data,
        'old_status': result.old_status,
        'new_status': result.new_status,
        'changed': result.changed,
        'restock_pending': result.restock_pending,
        'allowed_transitions': allowed_transitions(result.new_status),
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def order_status_history(request, pk):
    """Status history of an order, oldest first"""
    try:
        logs = status_history(pk)
    except FulfillmentError as e:
        return _error_response(e)
    return Response(OrderStatusLogSerializer(logs, many=True).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def order_resume_fulfillment(request, pk):
    """Finish reserving stock for a partially fulfilled order"""
    try:
        result = fulfillment.resume_fulfillment(pk, actor=request.user)
    except PartialFulfillmentError as e:
        return Response(_partial_data(e), status=e.http_status)
    except FulfillmentError as e:
        return _error_response(e)
    return Response(_fulfillment_data(result))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def order_restock(request, pk):
    """Return the stock a cancelled order took"""
    try:
        results = fulfillment.restock_cancelled_order(pk, actor=request.user)
    except FulfillmentError as e:
        return _error_response(e)
    return Response({
        'order_id': pk,
        'restocked': [
            {
                'stock_record_id': r.stock_record_id,
                'movement_id': r.movement_id,
                'quantity': r.applied,
                'available': r.available,
                'replayed': r.replayed,
            }
            for r in results
        ],
    })
