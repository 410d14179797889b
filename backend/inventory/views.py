from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.shortcuts import get_object_or_404

from backend.core.exceptions import FulfillmentError
from backend.core.utils import paginated_response_data
from . import ledger, resolver
from .models import StockRecord, StockMovement
from .serializers import (
    StockRecordSerializer, StockMovementSerializer,
    ProvisionSerializer, IncrementSerializer, AdjustSerializer,
)


def _error_response(error):
    return Response(error.to_response_data(), status=error.http_status)


def _optional_int_param(request, name):
    value = request.query_params.get(name, None)
    if value in (None, '', 'none'):
        return None, None
    try:
        return int(value), None
    except ValueError:
        return None, Response({'error': 'validation_error', 'message': f'{name} must be an integer'},
                              status=status.HTTP_400_BAD_REQUEST)


def _movement_data(result):
    movement = StockMovement.objects.select_related('stock_record__product', 'actor').get(pk=result.movement_id)
    data = StockMovementSerializer(movement).data
    data['available'] = result.available
    return data


# StockRecord views
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_list(request):
    """List stock records with optional variant filtering"""
    queryset = StockRecord.objects.select_related('product', 'color', 'size')

    for param in ('product_id', 'color_id', 'size_id'):
        value, error = _optional_int_param(request, param)
        if error is not None:
            return error
        if value is not None:
            queryset = queryset.filter(**{param: value})

    # "none" selects the records without that variant axis
    if request.query_params.get('color_id') == 'none':
        queryset = queryset.filter(color__isnull=True)
    if request.query_params.get('size_id') == 'none':
        queryset = queryset.filter(size__isnull=True)

    out_of_stock = request.query_params.get('out_of_stock', None)
    if out_of_stock in ('true', '1'):
        queryset = queryset.filter(available=0)
    elif out_of_stock in ('false', '0'):
        queryset = queryset.filter(available__gt=0)

    queryset = queryset.order_by('id')
    return Response(paginated_response_data(request, queryset, StockRecordSerializer))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_detail(request, pk):
    """Retrieve a stock record with its audit status"""
    record = get_object_or_404(StockRecord.objects.select_related('product', 'color', 'size'), pk=pk)
    data = StockRecordSerializer(record).data
    data['movement_total'] = ledger.movement_total(record.pk)
    data['balanced'] = data['movement_total'] == record.available
    return Response(data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stock_provision(request):
    """Create the stock record for a variant, optionally with an opening count"""
    serializer = ProvisionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    data = serializer.validated_data
    existing = resolver.find_stock_record(data['product_id'], data.get('color_id'), data.get('size_id'))
    if existing is not None:
        return Response(StockRecordSerializer(existing).data, status=status.HTTP_200_OK)

    try:
        record = resolver.provision_stock_record(
            data['product_id'],
            data.get('color_id'),
            data.get('size_id'),
            opening_count=data.get('opening_count', 0),
            actor=request.user,
        )
    except FulfillmentError as e:
        return _error_response(e)
    return Response(StockRecordSerializer(record).data, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stock_increment(request, pk):
    """Restock a stock record"""
    serializer = IncrementSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ledger.increment(
            pk,
            serializer.validated_data['quantity'],
            actor=request.user,
            note=serializer.validated_data.get('note', ''),
        )
    except FulfillmentError as e:
        return _error_response(e)
    return Response(_movement_data(result), status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stock_adjust(request, pk):
    """Manual signed correction of a stock record"""
    serializer = AdjustSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ledger.adjust(
            pk,
            serializer.validated_data['delta'],
            actor=request.user,
            note=serializer.validated_data.get('note', ''),
        )
    except FulfillmentError as e:
        return _error_response(e)
    return Response(_movement_data(result), status=status.HTTP_201_CREATED)


# StockMovement views (read-only)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_record_movements(request, pk):
    """Movement history of one stock record, oldest first"""
    record = get_object_or_404(StockRecord, pk=pk)
    queryset = record.movements.select_related('stock_record__product', 'actor').order_by('created_at', 'id')
    return Response(paginated_response_data(request, queryset, StockMovementSerializer))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_movement_list(request):
    """List stock movements with optional filtering"""
    queryset = StockMovement.objects.select_related('stock_record__product', 'actor')

    for param, lookup in (('stock_record_id', 'stock_record_id'), ('order_id', 'order_id'),
                          ('product_id', 'stock_record__product_id')):
        value, error = _optional_int_param(request, param)
        if error is not None:
            return error
        if value is not None:
            queryset = queryset.filter(**{lookup: value})

    movement_type = request.query_params.get('movement_type', None)
    if movement_type:
        queryset = queryset.filter(movement_type=movement_type)

    queryset = queryset.order_by('-created_at', '-id')
    return Response(paginated_response_data(request, queryset, StockMovementSerializer))
