"""Webmail gateway: a Flask backend proxying the Gmail API for a browser mail client."""

__version__ = "0.1.0"
