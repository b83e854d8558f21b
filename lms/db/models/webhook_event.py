"""
Webhook Event Model - delivery log used to drop duplicate webhook deliveries.

Keyed by the gateway's ``webhook-id`` header. Only ``completed`` rows block a
redelivery; ``failed`` rows and ``processing`` rows older than the stale
threshold are retried.
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, String, Text

from lms.db.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    event_id = Column(String(200), primary_key=True)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="processing")
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
