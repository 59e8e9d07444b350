"""Status resolution, drift checks and the external tracker client."""
