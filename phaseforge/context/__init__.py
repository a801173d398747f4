"""Session, pipeline state, aggregates and the agent context."""
