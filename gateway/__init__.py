"""HTTP edge concerns shared by the API: request ids, size limits, logging."""
