"""Media asset gateway: cache policy, store adapters and the HTTP app."""
