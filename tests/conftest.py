from __future__ import annotations

import matplotlib


def pytest_configure() -> None:
    """Render plots off-screen during the test run."""
    matplotlib.use("Agg")
