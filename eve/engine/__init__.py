"""Session and streaming runtime: providers, sessions, terminals, scheduler."""
