"""Local caches: dirent snapshots, file versions, repo dirs, refresh state."""
