"""Per-restaurant bill number counter."""
from sqlalchemy import Column, BigInteger, Integer
from restobill.database import Base, BigIntPK


class BillSequence(Base):
    """Last bill sequence handed out for a restaurant."""

    __tablename__ = 'bill_sequence'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    restaurant_id = Column(BigInteger, nullable=False, unique=True)
    last_number = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<BillSequence(restaurant_id={self.restaurant_id}, last_number={self.last_number})>"
