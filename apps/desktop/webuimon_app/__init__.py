"""Command line front end for WebUI Monitor."""
