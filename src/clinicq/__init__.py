"""
Clinic queue ordering and wait-time estimation.
"""

from .cli import app


def main() -> None:
    # Delegate to Typer app so `clinicq ...` works.
    app()
