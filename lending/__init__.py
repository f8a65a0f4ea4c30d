"""Library Lending - Core Application Package

This package contains the lending service modules including:
- API endpoints (api.py)
- Token issuing and rotation (tokens.py)
- Copy availability counters (ledger.py)
- Data models (models.py)
- Database layer and connection pool (database.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
