"""Core engine: agent loop, providers, and system collaborators."""
