"""Matrix bot that loads its commands from an external git repository."""
