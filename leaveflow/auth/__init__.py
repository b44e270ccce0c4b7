"""Auth — bearer-token decoding and role checks."""
