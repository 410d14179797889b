from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_date
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .exceptions import ValidationError
from .models import AuditLog
from .serializers import AuditLogSerializer, UserSerializer
from .utils import paginated_response_data


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def user_me(request):
    """The authenticated operator, as recorded as actor on status changes and stock movements"""
    return Response(UserSerializer(request.user).data)


def _date_param(request, name):
    value = request.query_params.get(name)
    if not value:
        return None
    try:
        parsed = parse_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)", **{name: value})
    return parsed


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log_list(request):
    """List audit logs, newest first

    Non-staff operators only see their own entries. Filters: action, model,
    object_id, reference, date_from, date_to.
    """
    queryset = AuditLog.objects.select_related('user')

    if not request.user.is_staff:
        queryset = queryset.filter(user=request.user)

    for param, field in (('action', 'action'), ('model', 'model_name'),
                         ('object_id', 'object_id'), ('reference', 'object_reference')):
        value = request.query_params.get(param)
        if value:
            queryset = queryset.filter(**{field: value})

    try:
        date_from = _date_param(request, 'date_from')
        date_to = _date_param(request, 'date_to')
    except ValidationError as e:
        return Response(e.to_response_data(), status=e.http_status)
    if date_from:
        queryset = queryset.filter(created_at__date__gte=date_from)
    if date_to:
        queryset = queryset.filter(created_at__date__lte=date_to)

    queryset = queryset.order_by('-created_at', '-id')
    return Response(paginated_response_data(request, queryset, AuditLogSerializer))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log_detail(request, pk):
    """Retrieve an audit log"""
    audit_log = get_object_or_404(AuditLog.objects.select_related('user'), pk=pk)

    if not request.user.is_staff and audit_log.user_id != request.user.pk:
        return Response({'error': 'permission_denied', 'message': 'Permission denied'},
                        status=status.HTTP_403_FORBIDDEN)

    return Response(AuditLogSerializer(audit_log).data)
