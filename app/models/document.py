"""Documents sent out for signing. Storage and rendering live elsewhere; only status is tracked here."""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship

from app.database import Base


class DocumentStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    completed = "completed"
    expired = "expired"
    declined = "declined"


class Document(Base):
    __tablename__ = "documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    file_url = Column(String(1000), nullable=True)
    status = Column(SQLEnum(DocumentStatus), nullable=False, default=DocumentStatus.pending)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    signers = relationship("Signer", back_populates="document", order_by="Signer.created_at")
