"""ftsetup: idempotent provisioning for a Freqtrade trading server."""

__version__ = "0.1.0"
