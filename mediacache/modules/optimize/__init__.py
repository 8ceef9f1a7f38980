"""Optimize module: the content-addressed transform pipeline."""
