"""Test that the project setup is working correctly."""

import token_alert_hub


def test_version() -> None:
    """Test that version is defined."""
    assert token_alert_hub.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all subpackages can be imported."""
    from token_alert_hub import alerter, hub, ingestor, rules, storage

    assert alerter is not None
    assert hub is not None
    assert ingestor is not None
    assert rules is not None
    assert storage is not None
