"""Configuration, timers and the subscription bus."""
