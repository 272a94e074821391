"""Version sources: the authoritative patches API and community mirrors."""
