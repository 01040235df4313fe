"""Benefit/commission accrual engine package.

Exposes nothing at package level; import from the submodules
(``accrual_engine.services``, ``accrual_engine.models.db``...) directly.
"""

__all__: list[str] = []
