"""Logging and metrics plumbing for kubernetes-scanner."""
