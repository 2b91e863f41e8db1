import django.db.models.deletion
from django.db import migrations, models


def entries_from_products(apps, schema_editor):
    Product = apps.get_model('catalog_sync', 'Product')
    FeedEntry = apps.get_model('catalog_sync', 'FeedEntry')
    FeedEntry.objects.bulk_create([
        FeedEntry(
            supplier_id=product.supplier_id,
            product_id=product.pk,
            external_key=product.a_number,
            source_url=product.source_url,
            content_hash=product.promidata_hash or '',
        )
        for product in Product.objects.all()
    ])


class Migration(migrations.Migration):

    dependencies = [
        ('catalog_sync', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='FeedEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_key', models.CharField(max_length=100)),
                ('source_url', models.URLField(blank=True, default='', max_length=1000)),
                ('content_hash', models.CharField(max_length=128)),
                ('last_synced_at', models.DateTimeField(auto_now=True)),
                ('supplier', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='feed_entries', to='catalog_sync.supplier',
                )),
                ('product', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE, related_name='feed_entries', to='catalog_sync.product',
                )),
            ],
            options={'ordering': ['external_key']},
        ),
        migrations.AddConstraint(
            model_name='feedentry',
            constraint=models.UniqueConstraint(fields=('supplier', 'external_key'), name='unique_feed_entry_per_supplier'),
        ),
        migrations.RunPython(entries_from_products, migrations.RunPython.noop),
    ]
