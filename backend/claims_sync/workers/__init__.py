"""Background workers for claims synchronization."""
