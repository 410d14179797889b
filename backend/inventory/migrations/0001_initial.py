# Generated manually for stock records and the stock movement ledger

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('catalog', '0001_initial'),
        ('orders', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='StockRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('available', models.IntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('color', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='stock_records', to='catalog.productcolor')),
                ('product', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='stock_records', to='catalog.product')),
                ('size', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='stock_records', to='catalog.productsize')),
            ],
            options={
                'db_table': 'product_stock',
                'indexes': [models.Index(fields=['product', 'color', 'size'], name='idx_stock_variant')],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('color__isnull', False), ('size__isnull', False)), fields=('product', 'color', 'size'), name='uniq_stock_product_color_size'),
                    models.UniqueConstraint(condition=models.Q(('color__isnull', False), ('size__isnull', True)), fields=('product', 'color'), name='uniq_stock_product_color'),
                    models.UniqueConstraint(condition=models.Q(('color__isnull', True), ('size__isnull', False)), fields=('product', 'size'), name='uniq_stock_product_size'),
                    models.UniqueConstraint(condition=models.Q(('color__isnull', True), ('size__isnull', True)), fields=('product',), name='uniq_stock_product'),
                    models.CheckConstraint(condition=models.Q(('available__gte', 0)), name='stock_available_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='StockMovement',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('movement_type', models.CharField(choices=[('decrement', 'Decrement (Sale)'), ('increment', 'Increment (Restock)'), ('adjustment', 'Adjustment')], max_length=20)),
                ('amount', models.PositiveIntegerField(help_text='Requested magnitude of the movement')),
                ('applied', models.IntegerField(help_text='Signed change actually applied to the available count')),
                ('idempotency_key', models.CharField(blank=True, max_length=100, null=True, unique=True)),
                ('note', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('actor', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='stock_movements', to=settings.AUTH_USER_MODEL)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='stock_movements', to='orders.order')),
                ('stock_record', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='movements', to='inventory.stockrecord')),
            ],
            options={
                'db_table': 'product_stock_logs',
                'ordering': ['created_at', 'id'],
                'indexes': [models.Index(fields=['stock_record', 'created_at'], name='idx_movement_stock_created'), models.Index(fields=['order'], name='idx_movement_order')],
            },
        ),
    ]
