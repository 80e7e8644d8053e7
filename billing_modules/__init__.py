"""
Billing domain modules.

Each module follows the same shape: ``models.py`` (frozen DTOs and enums),
``orm.py`` (SQLAlchemy persistence with ``to_dto()``) and ``service.py``
(account-scoped service that owns its transaction boundary).
"""
