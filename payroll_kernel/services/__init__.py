"""Kernel services: sequence allocation and the audit recorder."""
