"""Background catalog sync: TVMaze shows, TMDB movies, OMDB ratings, Sonarr library.

A job scheduler runs each sync on its own interval with single-flight
execution. Sync state lives in SQLite so the process resumes after restarts.
"""

__version__ = "0.1.0"
