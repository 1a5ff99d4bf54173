"""Job queue and worker services."""
