from sqlalchemy import Column, String, DateTime, LargeBinary, JSON, Uuid
from sqlalchemy.orm import relationship
import uuid
from datetime import datetime

from passkey_server.db.postgres import Base

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(255), unique=True, nullable=False, index=True)
    # WebAuthn user handle bound into every credential of this user
    user_handle = Column(LargeBinary(64), nullable=False)
    email = Column(String(255), nullable=True)
    # Client-side encrypted payload, stored and returned verbatim
    encrypted_data = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    credentials = relationship(
        "Credential",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
