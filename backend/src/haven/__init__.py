"""Haven backend: crisis-aware AI support for student journaling and chat."""
