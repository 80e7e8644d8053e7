"""
Module ORM Registry (``billing_modules._orm_registry``).

Ensures every SQLAlchemy model is imported so that ``Base.metadata`` holds
all table definitions before ``create_tables()`` runs.

Architecture position
---------------------
**Modules layer** -- utility.  ``billing_kernel.db.engine`` imports it
lazily inside ``create_tables()``; nothing else in the kernel may.
"""


def import_all_orm_models() -> None:
    """Import the kernel counter table and every module ``orm`` (idempotent)."""
    import billing_kernel.services.sequence_service  # noqa: F401
    # fmt: off
    import billing_modules.contracts.orm  # noqa: F401
    import billing_modules.settlement.orm  # noqa: F401
    import billing_modules.invoicing.orm  # noqa: F401
    # fmt: on
