"""StudyMate exam quiz engine and Discord bot."""
