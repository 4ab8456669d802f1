"""Discover GitHub and Jenkins workloads and validate, apply and roll back Conjur onboarding plans."""

__version__ = "0.1.0"