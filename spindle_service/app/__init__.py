"""HTTP surface of the service. Run with `python -m spindle_service.app`."""
