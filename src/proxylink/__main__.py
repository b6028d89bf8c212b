"""
Main entry point for running proxylink as a module.

Usage:
    python -m proxylink connect "https://android.httptoolkit.tech/connect/?data=..."
    python -m proxylink reconnect
    python -m proxylink status
"""

from .cli import app

if __name__ == "__main__":
    app()
