"""User account model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account record holding plan, wallet balance and free-tier counters.

    ``wallet_balance``, ``analyses_used`` and ``enrichments_used`` are only
    written by the guarded statements in ``services.wallet`` and
    ``services.usage``.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_balance_non_negative"),
        CheckConstraint("analyses_used >= 0", name="ck_users_analyses_used_non_negative"),
        CheckConstraint("enrichments_used >= 0", name="ck_users_enrichments_used_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    plan = Column(String, nullable=False, default="free", server_default="free")

    # Wallet (paid plans), integer cents
    wallet_balance = Column(Integer, nullable=False, default=0, server_default="0")
    wallet_reset_at = Column(DateTime(timezone=True), nullable=True)

    # Free tier counters
    analyses_used = Column(Integer, nullable=False, default=0, server_default="0")
    enrichments_used = Column(Integer, nullable=False, default=0, server_default="0")
    usage_reset_at = Column(DateTime(timezone=True), server_default=func.now())

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    wallet_transactions = relationship(
        "WalletTransaction",
        back_populates="user",
        order_by="WalletTransaction.id",
    )
