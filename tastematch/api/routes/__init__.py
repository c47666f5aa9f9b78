"""HTTP route modules for the TasteMatch API."""
