"""HTTP routes: health checks, privacy requests and operator endpoints."""
