from django.urls import path
from .views import (
    stock_list, stock_detail, stock_provision, stock_increment, stock_adjust,
    stock_record_movements, stock_movement_list,
)

urlpatterns = [
    # StockRecord endpoints
    path('stock/', stock_list, name='stock-list'),
    path('stock/provision/', stock_provision, name='stock-provision'),
    path('stock/<int:pk>/', stock_detail, name='stock-detail'),
    path('stock/<int:pk>/increment/', stock_increment, name='stock-increment'),
    path('stock/<int:pk>/adjust/', stock_adjust, name='stock-adjust'),
    path('stock/<int:pk>/movements/', stock_record_movements, name='stock-record-movements'),

    # StockMovement endpoints
    path('stock-movements/', stock_movement_list, name='stock-movement-list'),
]
