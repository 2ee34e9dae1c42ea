"""Browser automation sessions with a managed engine lifecycle."""
