"""Lending Desk - Core Application Package

This package contains the lending back office modules including:
- API endpoints (api.py)
- Library facade (library.py)
- CLI interface (main.py)
- Inventory ledger, loan lifecycle and fine accrual (inventory.py, loans.py, fines.py)
- Data models and domain errors (models.py, errors.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
