"""Storage layer: connections, migrations, repositories and the sync engine."""
