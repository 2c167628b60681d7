"""Comic story backend: turns a topic into an illustrated multi-panel comic."""
