"""Model-facing code: local sentence embeddings and the Claude client."""
