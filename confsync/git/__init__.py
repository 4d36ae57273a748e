"""Git access for the staging repository."""
