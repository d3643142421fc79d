"""HTTP routers for the revenue API."""
