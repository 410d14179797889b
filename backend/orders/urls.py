from django.urls import path
from .views import (
    order_list_create, order_detail, order_status_update, order_status_history,
    order_resume_fulfillment, order_restock,
)

urlpatterns = [
    # Order endpoints
    path('orders/', order_list_create, name='order-list-create'),
    path('orders/<int:pk>/', order_detail, name='order-detail'),
    path('orders/<int:pk>/status/', order_status_update, name='order-status-update'),
    path('orders/<int:pk>/status-history/', order_status_history, name='order-status-history'),
    path('orders/<int:pk>/resume-fulfillment/', order_resume_fulfillment, name='order-resume-fulfillment'),
    path('orders/<int:pk>/restock/', order_restock, name='order-restock'),
]
