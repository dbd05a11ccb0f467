"""Identity module: session cookies, identity resolution and renames."""
