"""Models and storage shared by the crawler and job control."""
