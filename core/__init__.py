"""Chapter acquisition and book-assembly pipeline."""
