from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key


def execute_conditional(db: Session, stmt, model, pk: str) -> bool:
    """Run a guarded UPDATE (compare-and-set) and report whether it matched.

    The WHERE clause carries the precondition, so concurrent writers never
    read-modify-write. A loaded instance is expired so the next attribute
    access sees the new row.
    """
    db.flush()  # pending changes on the instance would be lost by expire()
    result = db.execute(stmt, execution_options={"synchronize_session": False})
    instance = db.identity_map.get(identity_key(model, pk))
    if instance is not None:
        db.expire(instance)
    return result.rowcount == 1
