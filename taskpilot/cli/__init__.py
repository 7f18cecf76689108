"""TaskPilot command-line interface."""
