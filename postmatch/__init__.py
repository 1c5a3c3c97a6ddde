"""Order-to-profile revenue attribution for direct-mail campaigns."""
