"""
Test suite for meshcheck.

Test Structure:
- unit/: per-module tests against fakes and the local mock server
- integration/: live-platform scenarios, skipped unless the critical
  containers are running
- mock_mesh_server.py: threaded gateway and sidecar HTTP server used by
  the unit tests

Running Tests:
    pytest                      # Run all tests
    pytest tests/unit           # Unit tests only
    pytest --cov=meshcheck      # With coverage report
"""
