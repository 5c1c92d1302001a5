"""HTTP surface: user confirmation flow and the admin request queue."""
