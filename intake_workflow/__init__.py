"""Patient intake workflow: voice-AI webhook ingress, durable intake queue and athenahealth stages."""

__version__ = "1.0.0"
