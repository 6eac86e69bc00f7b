import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, LargeBinary, JSON, Uuid
from sqlalchemy.orm import relationship

from passkey_server.db.postgres import Base

class Credential(Base):
    __tablename__ = "credentials"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    credential_id = Column(LargeBinary(1023), unique=True, nullable=False)
    # CBOR encoded COSE public key
    public_key = Column(LargeBinary, nullable=False)
    aaguid = Column(LargeBinary(16), nullable=True)
    sign_count = Column(Integer, nullable=False, default=0)
    device_type = Column(String(32), nullable=False, default="singleDevice")
    backed_up = Column(Boolean, nullable=False, default=False)
    transports = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="credentials")
