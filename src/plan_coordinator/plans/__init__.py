"""Plan document model, grammar, dependency resolution and ticket lifecycle."""
