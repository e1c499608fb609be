"""Rate-limited HTTP gateway and the issue tracker client built on it."""
