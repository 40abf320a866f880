"""Settings, wall-clock helpers and the viewer HTTP client."""
