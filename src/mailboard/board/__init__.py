"""Board state and the components that keep it in sync with the mail store."""
