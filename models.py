# models.py
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

MAX_CODE_LENGTH = 64
MAX_DEVICE_ID_LENGTH = 128
MAX_EMAIL_LENGTH = 255

Base = declarative_base()


class PremiumCode(Base):
    __tablename__ = "premium_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(MAX_CODE_LENGTH), unique=True, index=True, nullable=False)
    # Code minus its checksum segment
    payload_key = Column(String(64), unique=True, index=True, nullable=False)
    code_type = Column(String(16), nullable=False, index=True)

    status = Column(String(8), nullable=False, default="unused")
    features = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    max_uses = Column(Integer, nullable=False, default=1)
    current_uses = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=True)

    batch = Column(String(64), nullable=True, index=True)
    notes = Column(String(255), nullable=True)
    email = Column(String(MAX_EMAIL_LENGTH), nullable=True)

    devices = relationship(
        "PremiumCodeDevice",
        back_populates="premium_code",
        lazy="selectin",
        order_by="PremiumCodeDevice.id",
    )


class PremiumCodeDevice(Base):
    __tablename__ = "premium_code_devices"
    __table_args__ = (
        UniqueConstraint("premium_code_id", "device_id", name="uq_premium_code_device"),
    )

    id = Column(Integer, primary_key=True, index=True)
    premium_code_id = Column(Integer, ForeignKey("premium_codes.id"), nullable=False, index=True)
    device_id = Column(String(MAX_DEVICE_ID_LENGTH), nullable=False, index=True)
    bound_at = Column(DateTime(timezone=True), nullable=False)

    premium_code = relationship("PremiumCode", back_populates="devices")


class ActivationLog(Base):
    __tablename__ = "activation_logs"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(MAX_CODE_LENGTH), nullable=False, index=True)
    device_id = Column(String(MAX_DEVICE_ID_LENGTH), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    country = Column(String(8), nullable=True)


class RateLimitBucket(Base):
    __tablename__ = "rate_limit_buckets"

    identity = Column(String(MAX_DEVICE_ID_LENGTH), primary_key=True)
    bucket = Column(Integer, primary_key=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
