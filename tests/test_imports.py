"""
Smoke tests to verify all modules can be imported.
"""

def test_import_execution_core():
    import execution_core
    assert hasattr(execution_core, '__version__')


def test_import_sandbox():
    import sandbox
    assert hasattr(sandbox, '__version__')


def test_import_sandbox_child_is_stdlib_only():
    import sandbox.child
    assert hasattr(sandbox.child, 'fetch_main')


def test_import_store():
    import store
    assert hasattr(store, '__version__')


def test_import_service():
    import service
    assert hasattr(service, '__version__')


def test_import_review():
    import review
    assert hasattr(review, '__version__')
