"""Application layer: agent loop, streaming, tools and provider orchestration."""
