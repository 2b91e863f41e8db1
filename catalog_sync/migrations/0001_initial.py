import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Supplier',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=20, unique=True)),
                ('name', models.CharField(blank=True, max_length=255)),
                ('is_active', models.BooleanField(default=True)),
                ('last_synced_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={'ordering': ['code']},
        ),
        migrations.CreateModel(
            name='Category',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('parent_code', models.CharField(blank=True, default='', max_length=50)),
                ('parent', models.ForeignKey(
                    blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL,
                    related_name='children', to='catalog_sync.category',
                )),
            ],
            options={'ordering': ['code'], 'verbose_name_plural': 'categories'},
        ),
        migrations.CreateModel(
            name='Product',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('a_number', models.CharField(max_length=100)),
                ('sku', models.CharField(max_length=100)),
                ('name', models.JSONField(blank=True, default=dict)),
                ('description', models.JSONField(blank=True, default=dict)),
                ('brand', models.CharField(blank=True, default='', max_length=255)),
                ('currency', models.CharField(default='EUR', max_length=3)),
                ('price_tiers', models.JSONField(blank=True, default=list)),
                ('main_image_url', models.URLField(blank=True, default='', max_length=1000)),
                ('gallery_image_urls', models.JSONField(blank=True, default=list)),
                ('category_codes', models.JSONField(blank=True, default=list)),
                ('primary_category_code', models.CharField(blank=True, default='', max_length=50)),
                ('available_colors', models.JSONField(blank=True, default=list)),
                ('available_sizes', models.JSONField(blank=True, default=list)),
                ('dimensions', models.JSONField(blank=True, default=dict)),
                ('source_url', models.URLField(blank=True, default='', max_length=1000)),
                ('promidata_hash', models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ('content_fingerprint', models.CharField(blank=True, default='', max_length=64)),
                ('last_synced_at', models.DateTimeField(auto_now=True)),
                ('is_active', models.BooleanField(default=True)),
                ('supplier', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='products', to='catalog_sync.supplier',
                )),
            ],
        ),
        migrations.AddConstraint(
            model_name='product',
            constraint=models.UniqueConstraint(fields=('supplier', 'a_number'), name='unique_product_a_number_per_supplier'),
        ),
        migrations.AddConstraint(
            model_name='product',
            constraint=models.UniqueConstraint(fields=('supplier', 'sku'), name='unique_product_sku_per_supplier'),
        ),
        migrations.CreateModel(
            name='ProductVariant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sku', models.CharField(max_length=100, unique=True)),
                ('name', models.JSONField(blank=True, default=dict)),
                ('colour', models.CharField(blank=True, default='', max_length=100)),
                ('colour_code', models.CharField(blank=True, default='', max_length=50)),
                ('hex_colour', models.CharField(blank=True, default='', max_length=20)),
                ('size', models.CharField(blank=True, default='', max_length=50)),
                ('material', models.JSONField(blank=True, default=dict)),
                ('main_image_url', models.URLField(blank=True, default='', max_length=1000)),
                ('gallery_image_urls', models.JSONField(blank=True, default=list)),
                ('dimensions', models.JSONField(blank=True, default=dict)),
                ('is_primary_for_color', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('product', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='variants', to='catalog_sync.product',
                )),
            ],
            options={'ordering': ['id']},
        ),
        migrations.CreateModel(
            name='SyncSession',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('session_id', models.CharField(max_length=100, unique=True)),
                ('supplier_code', models.CharField(db_index=True, max_length=20)),
                ('state', models.CharField(
                    choices=[('running', 'Running'), ('completed', 'Completed'),
                             ('failed', 'Failed'), ('cancelled', 'Cancelled')],
                    default='running', max_length=20,
                )),
                ('phase', models.CharField(
                    choices=[('idle', 'Idle'), ('fetching_manifest', 'Fetching manifest'),
                             ('diffing', 'Diffing'), ('enqueuing', 'Enqueuing'),
                             ('draining', 'Draining'), ('finalizing', 'Finalizing')],
                    default='idle', max_length=30,
                )),
                ('triggered_by', models.CharField(default='manual', max_length=50)),
                ('started_at', models.DateTimeField(auto_now_add=True)),
                ('ended_at', models.DateTimeField(blank=True, null=True)),
                ('scanned', models.PositiveIntegerField(default=0)),
                ('added', models.PositiveIntegerField(default=0)),
                ('updated', models.PositiveIntegerField(default=0)),
                ('unchanged', models.PositiveIntegerField(default=0)),
                ('removed', models.PositiveIntegerField(default=0)),
                ('failed', models.PositiveIntegerField(default=0)),
                ('stop_requested', models.BooleanField(default=False)),
                ('last_error', models.TextField(blank=True, default='')),
                ('error_count', models.PositiveIntegerField(default=0)),
                ('verification_status', models.CharField(blank=True, default='', max_length=20)),
                ('verification_details', models.JSONField(blank=True, default=dict)),
            ],
            options={'ordering': ['-started_at', '-id']},
        ),
        migrations.AddConstraint(
            model_name='syncsession',
            constraint=models.UniqueConstraint(
                condition=models.Q(('state', 'running')),
                fields=('supplier_code',),
                name='one_running_session_per_supplier',
            ),
        ),
        migrations.CreateModel(
            name='SyncSessionError',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('stage', models.CharField(max_length=30)),
                ('external_key', models.CharField(blank=True, default='', max_length=100)),
                ('message', models.TextField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('session', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='errors', to='catalog_sync.syncsession',
                )),
            ],
            options={'ordering': ['id']},
        ),
        migrations.CreateModel(
            name='SyncJobOutcome',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('job_id', models.CharField(max_length=64)),
                ('entity_type', models.CharField(max_length=20)),
                ('action', models.CharField(max_length=20)),
                ('external_key', models.CharField(max_length=100)),
                ('source_url', models.URLField(blank=True, default='', max_length=1000)),
                ('content_hash', models.CharField(blank=True, default='', max_length=128)),
                ('status', models.CharField(
                    choices=[('added', 'Added'), ('updated', 'Updated'),
                             ('removed', 'Removed'), ('failed', 'Failed')],
                    max_length=20,
                )),
                ('attempts', models.PositiveIntegerField(default=1)),
                ('last_error', models.TextField(blank=True, default='')),
                ('finished_at', models.DateTimeField(auto_now_add=True)),
                ('session', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='outcomes', to='catalog_sync.syncsession',
                )),
            ],
            options={'ordering': ['id']},
        ),
        migrations.AddConstraint(
            model_name='syncjoboutcome',
            constraint=models.UniqueConstraint(fields=('session', 'job_id'), name='one_outcome_per_job'),
        ),
    ]
