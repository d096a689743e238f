from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    Float,
)


Base = declarative_base()

# Unit statuses
AVAILABLE = "AVAILABLE"
RESERVED = "RESERVED"
PAID = "PAID"
STATUSES = (AVAILABLE, RESERVED, PAID)


# ----------------------------
# ORM models
# ----------------------------
class Unit(Base):
    __tablename__ = "units"
    __table_args__ = (
        CheckConstraint(
            "status IN ('AVAILABLE', 'RESERVED', 'PAID')",
            name="units_status_check",
        ),
        CheckConstraint(
            "(status = 'RESERVED') = (reserved_at IS NOT NULL)",
            name="units_reserved_at_check",
        ),
    )

    number = Column(Integer, primary_key=True, autoincrement=False)

    # AVAILABLE | RESERVED | PAID
    status = Column(String, nullable=False, default=AVAILABLE)

    # present iff RESERVED or PAID
    buyer_name = Column(String, nullable=True)
    buyer_phone = Column(String, nullable=True, index=True)
    buyer_document = Column(String, nullable=True)
    order_reference = Column(String, nullable=True, index=True)

    # set once the provider created the payment
    payment_handle = Column(String, nullable=True, index=True)

    # epoch seconds, non-null iff RESERVED
    reserved_at = Column(Float, nullable=True, index=True)
