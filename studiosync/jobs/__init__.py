"""Import job lifecycle: store, progress, worker, watchdog, scheduler."""
