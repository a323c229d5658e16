"""Learning objective and exam question generation on top of the gateway."""
