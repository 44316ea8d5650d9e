"""Pure domain primitives for the billing kernel. Zero I/O."""
