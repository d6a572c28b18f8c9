"""Configuration, structured logging and the error hierarchy."""
