"""Drive a coding agent through a GitHub issue queue one task at a time."""
