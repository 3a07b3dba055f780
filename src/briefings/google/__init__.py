"""Google OAuth and Calendar API clients."""
