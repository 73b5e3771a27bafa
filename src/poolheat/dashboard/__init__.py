"""Control API: decision log, status, settings and manual actions."""
