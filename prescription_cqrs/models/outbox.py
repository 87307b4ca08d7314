from tortoise import fields, models


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the database transaction.
    This is the core of the Transactional Outbox Pattern.

    Rows are only ever mutated by the relay (processed/published/error/retry
    columns) and are deleted by housekeeping once processed and past retention.
    """
    id = fields.BigIntField(primary_key=True)
    aggregate_type = fields.CharField(max_length=64) # e.g., 'prescription'
    aggregate_id = fields.CharField(max_length=64) # ID of the entity that generated the event
    event_type = fields.CharField(max_length=128) # e.g., 'prescription.created'
    payload = fields.TextField() # Serialized event, published to the broker as-is
    created_at = fields.DatetimeField(auto_now_add=True)
    processed_at = fields.DatetimeField(null=True)
    published_at = fields.DatetimeField(null=True)
    error_message = fields.TextField(null=True)
    retry_count = fields.IntField(default=0)

    class Meta:
        table = "outbox_events"
        indexes = [
            ("processed_at", "retry_count", "created_at"),  # Relay poll query
        ]

    @property
    def routing_key(self) -> str:
        return f"{self.aggregate_type}-{self.aggregate_id}"
