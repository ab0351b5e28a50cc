"""WalletTransaction model: append-only audit trail of balance mutations."""

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class WalletTransaction(Base):
    """Immutable wallet ledger entry."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        CheckConstraint("type IN ('debit', 'credit')", name="ck_wallet_transactions_type"),
        UniqueConstraint("refund_of_id", name="uq_wallet_transactions_refund_of_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    action_type = Column(String, nullable=False, index=True)
    reason = Column(String, nullable=False)
    balance_after = Column(Integer, nullable=False)
    # Debit this entry refunds; at most one refund per debit
    refund_of_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="wallet_transactions")
