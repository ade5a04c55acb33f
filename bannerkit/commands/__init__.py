"""Long-running and interactive bannerkit commands (dev server, watch, clean)."""
