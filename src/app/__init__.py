"""Application wiring: configuration, logging, retry policy and runtime."""
