"""Browser capability interface and its DevTools backend."""
