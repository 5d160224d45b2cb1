"""Social graph, visibility and notifications."""
