"""Unit tests for StudioSync web route modules.

Structure:
    tests/unit/web/
    ├── test_routes_imports.py            # Import job routes
    ├── test_routes_scheduled_imports.py  # Scheduled import routes
    └── test_app.py                       # App wiring, health, error mapping

Testing pattern:
    - Use FastAPI's TestClient for route testing
    - Replace controller/store/scheduler through dependency_overrides
    - Test request/response validation and error handling
"""
