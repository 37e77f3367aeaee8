"""Link preview scraping (title and og:image of the first URL in a message)."""
