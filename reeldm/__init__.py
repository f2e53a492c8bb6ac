"""Instagram reel comment-to-DM dispatch queue."""
