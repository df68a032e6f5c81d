import importlib


def test_main_importable(monkeypatch):
    """The application and the job runner import without circular import errors."""
    monkeypatch.setenv("APP_ENV", "dev")

    module = importlib.import_module("app.main")
    assert getattr(module, "app", None) is not None
    assert importlib.import_module("app.jobs.run").DEFAULT_JOBS == ["complete-past-bookings", "capacity-audit"]
