"""HTTP API for the disbursement engine."""
