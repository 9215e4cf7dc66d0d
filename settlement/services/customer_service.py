import uuid

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.db.conditional import execute_conditional
from settlement.models.customer import Customer


def upsert_customer(db: Session, email: str, name: str, phone: str = "") -> Customer:
    """Find the customer by email, refreshing name/phone, or create one."""
    email = email.strip().lower()
    c = db.query(Customer).filter(Customer.email == email).first()
    if c:
        c.name = name or c.name
        c.phone = phone or c.phone
        db.flush()
        return c
    c = Customer(id=str(uuid.uuid4()), email=email, name=name or "", phone=phone or "")
    try:
        with db.begin_nested():
            db.add(c)
            db.flush()
    except IntegrityError:
        # same email created by a concurrent checkout
        return db.query(Customer).filter(Customer.email == email).one()
    return c


def record_paid_booking(db: Session, customer_id: str, amount: int) -> None:
    """Bump the customer's rollups for one paid booking."""
    stmt = (
        update(Customer)
        .where(Customer.id == customer_id)
        .values(
            total_bookings=Customer.total_bookings + 1,
            total_spent=Customer.total_spent + amount,
        )
    )
    execute_conditional(db, stmt, Customer, customer_id)
