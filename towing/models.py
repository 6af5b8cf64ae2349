from decimal import Decimal

from django.db import models


class Agency(models.Model):
    name = models.CharField(max_length=120)

    def __str__(self):
        return self.name


class Provider(models.Model):
    STATUS_CHOICES = [
        ('online', 'Online'),
        ('offline', 'Offline'),
    ]
    name = models.CharField(max_length=100)
    phone = models.CharField(max_length=20, blank=True, default='')
    agency = models.ForeignKey(Agency, on_delete=models.SET_NULL, null=True, blank=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='offline')
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    location_updated_at = models.DateTimeField(null=True, blank=True)

    # Pricing configuration
    base_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    price_per_km = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    price_per_minute = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    return_base_fee = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    offers_skates = models.BooleanField(default=False)
    skates_price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))

    # Financial rollup, maintained by settlement
    commission_owed = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    payments_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))

    class Meta:
        db_table = 'prestadores'

    def __str__(self):
        return self.name

    @property
    def is_online(self):
        return self.status == 'online'

    @property
    def balance(self):
        return self.payments_total - self.commission_owed


class Request(models.Model):
    class Status(models.TextChoices):
        PENDING = 'pendente', 'Pending'
        DIRECTED = 'direcionada', 'Directed'
        IN_PROGRESS = 'em_andamento', 'In progress'
        ON_SITE = 'no_local', 'On site'
        EN_ROUTE = 'em_viagem', 'En route'
        FINALIZED = 'finalizado', 'Finalized'
        CANCELLED = 'cancelado', 'Cancelled'

    client_id = models.CharField(max_length=64, null=True, blank=True)  # null for guests
    guest_name = models.CharField(max_length=100, blank=True, default='')
    provider = models.ForeignKey(
        Provider,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='requests',
        db_column='prestador_id',
    )
    agency = models.ForeignKey(Agency, on_delete=models.SET_NULL, null=True, blank=True)

    origin_lat = models.FloatField()
    origin_lng = models.FloatField()
    # Legacy rows may lack a destination.
    destination_lat = models.FloatField(null=True, blank=True)
    destination_lng = models.FloatField(null=True, blank=True)
    pickup_address = models.CharField(max_length=255, blank=True, default='')
    destination_address = models.CharField(max_length=255, blank=True, default='')

    distance_km = models.FloatField(null=True, blank=True)
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)
    route_polyline = models.TextField(null=True, blank=True)
    eta_minutes = models.PositiveIntegerField(null=True, blank=True)

    amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    # Post-completion
    toll_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    skates_used = models.BooleanField(default=False)
    skates_quantity = models.PositiveIntegerField(default=0)
    skates_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    problem_reported = models.BooleanField(default=False)
    problem_type = models.CharField(max_length=50, blank=True, default='')
    problem_description = models.TextField(blank=True, default='')
    final_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    commission_rate = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    commission_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    class Meta:
        db_table = 'solicitacoes'
        ordering = ['-created_at']

    def __str__(self):
        return f"Request {self.pk} ({self.status})"

    @property
    def is_covered(self):
        return self.amount == 0

    @property
    def has_destination(self):
        return self.destination_lat is not None and self.destination_lng is not None


class Checklist(models.Model):
    class Phase(models.TextChoices):
        START = 'inicio', 'Pickup'
        END = 'fim', 'Drop-off'

    request = models.ForeignKey(Request, on_delete=models.CASCADE, related_name='checklists')
    provider = models.ForeignKey(Provider, on_delete=models.PROTECT, related_name='checklists')
    agency = models.ForeignKey(Agency, on_delete=models.SET_NULL, null=True, blank=True)
    phase = models.CharField(max_length=10, choices=Phase.choices)
    items = models.JSONField(default=list)  # [{"name", "required", "checked"}]
    photos = models.JSONField(default=list)
    front_photo_url = models.URLField(max_length=500)
    rear_photo_url = models.URLField(max_length=500)
    notes = models.TextField(blank=True, default='')
    # Costs declared at drop-off, applied when the request is finalized.
    toll_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0'))
    skates_quantity = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'solicitacao_checklist'
        constraints = [
            models.UniqueConstraint(fields=['request', 'phase'], name='unique_checklist_per_phase'),
        ]

    def __str__(self):
        return f"Checklist {self.phase} for request {self.request_id}"


class Message(models.Model):
    SENDER_CHOICES = [
        ('cliente', 'Client'),
        ('prestador', 'Provider'),
    ]
    request = models.ForeignKey(Request, on_delete=models.CASCADE, related_name='messages')
    sender_role = models.CharField(max_length=10, choices=SENDER_CHOICES)
    body = models.TextField()
    read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'mensagens'
        ordering = ['created_at']

    def __str__(self):
        return f"{self.sender_role}: {self.body[:30]}"


class Rating(models.Model):
    request = models.OneToOneField(
        Request, on_delete=models.CASCADE, related_name='rating', db_column='solicitacao_id',
    )
    provider = models.ForeignKey(
        Provider, on_delete=models.SET_NULL, null=True, blank=True, related_name='ratings', db_column='prestador_id',
    )
    agency = models.ForeignKey(Agency, on_delete=models.SET_NULL, null=True, blank=True)
    client_id = models.CharField(max_length=64)
    score = models.PositiveSmallIntegerField(db_column='nota')  # 1 to 5
    comment = models.TextField(blank=True, default='', db_column='comentario')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'avaliacoes'

    def __str__(self):
        return f"{self.score} for request {self.request_id}"
