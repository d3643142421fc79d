"""Background services for the revenue API."""
