"""Configuration, logging, error handling and metrics shared by all layers."""
