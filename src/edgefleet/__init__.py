"""Edge device enrollment and task dispatch."""
