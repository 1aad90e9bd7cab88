"""Order Line model."""
from sqlalchemy import Column, BigInteger, Integer, String, Numeric, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from restobill.database import Base, BigIntPK
from restobill.utils.money import Money


class OrderLine(Base):
    """Order line. ``unit_price`` is the menu price snapshotted when the order was taken."""

    __tablename__ = 'order_line'
    __table_args__ = (
        CheckConstraint('quantity >= 1', name='ck_order_line_quantity'),
        CheckConstraint('unit_price >= 0', name='ck_order_line_unit_price'),
    )

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id'), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    menu_item_id = Column(BigInteger, nullable=False)
    name_snapshot = Column(String(200), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    # Relationships
    order = relationship('Order', back_populates='lines')

    @property
    def unit_price_money(self) -> Money:
        return Money.of(self.unit_price, 'unit_price')

    @property
    def line_total_money(self) -> Money:
        return self.unit_price_money.times(self.quantity)

    @property
    def line_total(self):
        return self.line_total_money.amount

    def __repr__(self):
        return f"<OrderLine(id={self.id}, menu_item_id={self.menu_item_id}, quantity={self.quantity})>"
