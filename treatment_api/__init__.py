"""
Treatment AI Backend — Application Package Initializer
=======================================================

What: Marks the `treatment_api` directory as a Python package.
Why:  Enables module imports like `from treatment_api.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:
    Every endpoint follows the same layered path:

    ┌─────────────────────────────────────┐
    │     Routes (API Layer, thin)        │  ← HTTP concerns, auth dependency
    ├─────────────────────────────────────┤
    │     Services (Business Logic)       │  ← validation, SQL, OpenAI / Terra / Merlin
    ├─────────────────────────────────────┤
    │     Models & Schemas (Data)         │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │     Database (Persistence)          │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Routes authenticate the bearer session, hand the request to a service
    singleton and shape the response. Services raise application exceptions
    which the global handlers in main.py turn into JSON error bodies.
"""

__version__ = "1.0.0"
