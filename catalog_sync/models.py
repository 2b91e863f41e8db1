from django.db import models
from django.db.models import Q


class Supplier(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['code']

    def __str__(self):
        return f"{self.code} {self.name}".strip()


class Category(models.Model):
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=255)
    parent_code = models.CharField(max_length=50, blank=True, default='')
    parent = models.ForeignKey(
        'self', null=True, blank=True, on_delete=models.SET_NULL, related_name='children',
    )

    class Meta:
        ordering = ['code']
        verbose_name_plural = 'categories'

    def __str__(self):
        return f"{self.code} ({self.name})"


class Product(models.Model):
    supplier = models.ForeignKey(Supplier, on_delete=models.CASCADE, related_name='products')
    a_number = models.CharField(max_length=100)
    sku = models.CharField(max_length=100)
    name = models.JSONField(default=dict, blank=True)
    description = models.JSONField(default=dict, blank=True)
    brand = models.CharField(max_length=255, blank=True, default='')
    currency = models.CharField(max_length=3, default='EUR')
    price_tiers = models.JSONField(default=list, blank=True)
    main_image_url = models.URLField(max_length=1000, blank=True, default='')
    gallery_image_urls = models.JSONField(default=list, blank=True)
    category_codes = models.JSONField(default=list, blank=True)
    primary_category_code = models.CharField(max_length=50, blank=True, default='')
    available_colors = models.JSONField(default=list, blank=True)
    available_sizes = models.JSONField(default=list, blank=True)
    dimensions = models.JSONField(default=dict, blank=True)
    source_url = models.URLField(max_length=1000, blank=True, default='')
    # Feed hash of the family: the file hash for a single file, else a hash over all of them.
    promidata_hash = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    content_fingerprint = models.CharField(max_length=64, blank=True, default='')
    last_synced_at = models.DateTimeField(auto_now=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['supplier', 'a_number'], name='unique_product_a_number_per_supplier'),
            models.UniqueConstraint(fields=['supplier', 'sku'], name='unique_product_sku_per_supplier'),
        ]

    def __str__(self):
        return f"{self.sku} (hash={(self.promidata_hash or '')[:8]}...)"


class ProductVariant(models.Model):
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='variants')
    sku = models.CharField(max_length=100, unique=True)
    name = models.JSONField(default=dict, blank=True)
    colour = models.CharField(max_length=100, blank=True, default='')
    colour_code = models.CharField(max_length=50, blank=True, default='')
    hex_colour = models.CharField(max_length=20, blank=True, default='')
    size = models.CharField(max_length=50, blank=True, default='')
    material = models.JSONField(default=dict, blank=True)
    main_image_url = models.URLField(max_length=1000, blank=True, default='')
    gallery_image_urls = models.JSONField(default=list, blank=True)
    dimensions = models.JSONField(default=dict, blank=True)
    is_primary_for_color = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return self.sku


class FeedEntry(models.Model):
    """One manifest file and the hash it was last synced at. The diff compares against these."""

    supplier = models.ForeignKey(Supplier, on_delete=models.CASCADE, related_name='feed_entries')
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='feed_entries')
    external_key = models.CharField(max_length=100)
    source_url = models.URLField(max_length=1000, blank=True, default='')
    content_hash = models.CharField(max_length=128)
    last_synced_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['external_key']
        constraints = [
            models.UniqueConstraint(fields=['supplier', 'external_key'], name='unique_feed_entry_per_supplier'),
        ]

    def __str__(self):
        return f"{self.external_key}|{self.content_hash}"


class SyncSession(models.Model):
    STATE_RUNNING = 'running'
    STATE_COMPLETED = 'completed'
    STATE_FAILED = 'failed'
    STATE_CANCELLED = 'cancelled'
    STATE_CHOICES = [
        (STATE_RUNNING, 'Running'),
        (STATE_COMPLETED, 'Completed'),
        (STATE_FAILED, 'Failed'),
        (STATE_CANCELLED, 'Cancelled'),
    ]

    PHASE_IDLE = 'idle'
    PHASE_FETCHING_MANIFEST = 'fetching_manifest'
    PHASE_DIFFING = 'diffing'
    PHASE_ENQUEUING = 'enqueuing'
    PHASE_DRAINING = 'draining'
    PHASE_FINALIZING = 'finalizing'
    PHASE_CHOICES = [
        (PHASE_IDLE, 'Idle'),
        (PHASE_FETCHING_MANIFEST, 'Fetching manifest'),
        (PHASE_DIFFING, 'Diffing'),
        (PHASE_ENQUEUING, 'Enqueuing'),
        (PHASE_DRAINING, 'Draining'),
        (PHASE_FINALIZING, 'Finalizing'),
    ]

    TOTAL_FIELDS = ('scanned', 'added', 'updated', 'unchanged', 'removed', 'failed')

    session_id = models.CharField(max_length=100, unique=True)
    supplier_code = models.CharField(max_length=20, db_index=True)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_RUNNING)
    phase = models.CharField(max_length=30, choices=PHASE_CHOICES, default=PHASE_IDLE)
    triggered_by = models.CharField(max_length=50, default='manual')
    started_at = models.DateTimeField(auto_now_add=True)
    ended_at = models.DateTimeField(null=True, blank=True)

    scanned = models.PositiveIntegerField(default=0)
    added = models.PositiveIntegerField(default=0)
    updated = models.PositiveIntegerField(default=0)
    unchanged = models.PositiveIntegerField(default=0)
    removed = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)

    stop_requested = models.BooleanField(default=False)
    last_error = models.TextField(blank=True, default='')
    error_count = models.PositiveIntegerField(default=0)

    verification_status = models.CharField(max_length=20, blank=True, default='')
    verification_details = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ['-started_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['supplier_code'],
                condition=Q(state='running'),
                name='one_running_session_per_supplier',
            ),
        ]

    def __str__(self):
        return f"{self.session_id} [{self.state}]"

    @property
    def totals(self) -> dict:
        return {name: getattr(self, name) for name in self.TOTAL_FIELDS}

    @property
    def duration_seconds(self):
        if self.ended_at is None or self.started_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class SyncSessionError(models.Model):
    session = models.ForeignKey(SyncSession, on_delete=models.CASCADE, related_name='errors')
    stage = models.CharField(max_length=30)
    external_key = models.CharField(max_length=100, blank=True, default='')
    message = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']


class SyncJobOutcome(models.Model):
    STATUS_ADDED = 'added'
    STATUS_UPDATED = 'updated'
    STATUS_REMOVED = 'removed'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_ADDED, 'Added'),
        (STATUS_UPDATED, 'Updated'),
        (STATUS_REMOVED, 'Removed'),
        (STATUS_FAILED, 'Failed'),
    ]

    session = models.ForeignKey(SyncSession, on_delete=models.CASCADE, related_name='outcomes')
    job_id = models.CharField(max_length=64)
    entity_type = models.CharField(max_length=20)
    action = models.CharField(max_length=20)
    external_key = models.CharField(max_length=100)
    source_url = models.URLField(max_length=1000, blank=True, default='')
    content_hash = models.CharField(max_length=128, blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    attempts = models.PositiveIntegerField(default=1)
    last_error = models.TextField(blank=True, default='')
    finished_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.UniqueConstraint(fields=['session', 'job_id'], name='one_outcome_per_job'),
        ]
