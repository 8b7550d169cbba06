from puzzlerace import migrations


def test_migrations_apply_once(engine):
    first = migrations.run_migrations(engine)
    assert first == [name for name, _ in migrations.MIGRATIONS]
    assert migrations.run_migrations(engine) == []
    assert migrations.has_migration_been_applied(engine, "001_leaderboard_indexes")
