"""Library App - Core Application Package

This package contains the core application modules including:
- Entity model (models.py)
- Storage backends behind one Repository contract (storage/)
- Loan workflow engine (library.py)
- Accounts and authentication (users.py)
- Backend selection and switching (selector.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
