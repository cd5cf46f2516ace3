import pytest

import tablitz


def _session(groups, source=None):
    return tablitz.TabSession.build(source or tablitz.UnknownSource(), groups, imported_at=1000)


def _group(group_id, created_at, urls, label=None):
    tabs = [
        tablitz.Tab(id=f"t{i}", url=url, title=f"title {i}", added_at=created_at, position=i)
        for i, url in enumerate(urls)
    ]
    return tablitz.TabGroup(id=group_id, created_at=created_at, label=label, tabs=tabs)


def test_insert_session_twice_is_a_no_op(tmp_path) -> None:
    session = _session([_group("g1", 10, ["https://a.com", "https://b.com"]), _group("g2", 20, ["https://c.com"])])

    with tablitz.TabStore(tmp_path / "store.db") as store:
        first = store.insert_session(session)
        snapshot = tablitz.session_to_json(store.read_session())
        second = store.insert_session(session)

        assert (first.groups_inserted, first.tabs_inserted) == (2, 3)
        assert (second.groups_inserted, second.tabs_inserted) == (0, 0)
        assert second.groups_skipped == 2
        assert (store.group_count(), store.tab_count()) == (2, 3)
        assert tablitz.session_to_json(store.read_session())["groups"] == snapshot["groups"]


def test_read_session_orders_newest_group_first(tmp_path) -> None:
    with tablitz.TabStore(tmp_path / "store.db") as store:
        store.insert_session(_session([
            _group("old", 10, ["https://a.com"]),
            _group("new", 30, ["https://b.com", "https://c.com"], label="fresh"),
            _group("mid", 20, ["https://d.com"]),
        ]))
        session = store.read_session()

    assert [g.id for g in session.groups] == ["new", "mid", "old"]
    assert session.groups[0].label == "fresh"
    assert [t.position for t in session.groups[0].tabs] == [0, 1]
    assert isinstance(session.source, tablitz.UnknownSource)


def test_group_provenance_is_stored(tmp_path) -> None:
    source = tablitz.BrowserSource(tablitz.Browser.EDGE, "Profile 1")
    with tablitz.TabStore(tmp_path / "store.db") as store:
        store.insert_session(_session([_group("g1", 1, ["https://a.com"])], source=source))
        row = store.conn.execute("SELECT source_type, source_profile, source_path FROM tab_groups").fetchone()

    assert row == ("Edge", "Profile 1", None)


def test_empty_group_id_is_reported_and_batch_continues(tmp_path) -> None:
    session = _session([_group("", 1, ["https://a.com"]), _group("g2", 2, ["https://b.com"])])

    with tablitz.TabStore(tmp_path / "store.db") as store:
        stats = store.insert_session(session)
        ids = [g.id for g in store.read_session().groups]

    assert ids == ["g2"]
    assert len(stats.violations) == 1
    assert stats.violations[0].kind == tablitz.CONSTRAINT_VIOLATION
    assert stats.groups_inserted == 1


def test_null_url_is_a_constraint_violation(tmp_path) -> None:
    group = _group("g1", 1, ["https://a.com", "https://b.com"])
    group.tabs[0].url = None

    with tablitz.TabStore(tmp_path / "store.db") as store:
        stats = store.insert_session(_session([group]))
        tabs = store.get_group("g1").tabs

    assert [t.url for t in tabs] == ["https://b.com"]
    assert tabs[0].position == 0
    assert len(stats.violations) == 1


def test_storage_failure_raises(tmp_path) -> None:
    store = tablitz.TabStore(tmp_path / "store.db")
    store.close()

    with pytest.raises(tablitz.StorageWriteFailed):
        store.insert_session(_session([_group("g1", 1, ["https://a.com"])]))


def test_storage_failure_keeps_earlier_groups(tmp_path) -> None:
    db_path = tmp_path / "store.db"
    with tablitz.TabStore(db_path) as store:
        # Make the second group's tab insert fail with a non-constraint error.
        store.conn.execute("DROP TABLE tabs")
        store.conn.execute(
            "CREATE TABLE tabs (group_id TEXT, id TEXT, url TEXT, title TEXT, favicon_url TEXT, added_at INTEGER)"
        )
        with pytest.raises(tablitz.StorageWriteFailed):
            store.insert_session(_session([tablitz.TabGroup(id="g0", created_at=1), _group("g1", 2, ["https://a.com"])]))
        assert store.group_count() == 1


def test_replace_tabs_for_group_is_atomic_and_renumbers(tmp_path) -> None:
    with tablitz.TabStore(tmp_path / "store.db") as store:
        store.insert_session(_session([_group("g1", 1, ["https://a.com", "https://b.com", "https://c.com"])]))
        survivors = [t for t in store.get_group("g1").tabs if t.url != "https://b.com"]

        assert store.replace_tabs_for_group("g1", survivors) == 2
        tabs = store.get_group("g1").tabs
        assert [(t.id, t.position) for t in tabs] == [("t0", 0), ("t2", 1)]

        duplicate_ids = [tablitz.Tab(id="x", url="https://x.com"), tablitz.Tab(id="x", url="https://y.com")]
        with pytest.raises(tablitz.StorageWriteFailed):
            store.replace_tabs_for_group("g1", duplicate_ids)
        assert [t.id for t in store.get_group("g1").tabs] == ["t0", "t2"]


def test_replace_tabs_for_unknown_group(tmp_path) -> None:
    with tablitz.TabStore(tmp_path / "store.db") as store:
        with pytest.raises(tablitz.UnknownGroup):
            store.replace_tabs_for_group("missing", [])
        assert isinstance(tablitz.UnknownGroup("x"), tablitz.TablitzError)


def test_delete_group_cascades_to_tabs(tmp_path) -> None:
    with tablitz.TabStore(tmp_path / "store.db") as store:
        store.insert_session(_session([_group("g1", 1, ["https://a.com", "https://b.com"])]))
        assert store.delete_group("g1") is True
        assert store.delete_group("g1") is False
        assert (store.group_count(), store.tab_count()) == (0, 0)


def test_reimport_after_dedup_does_not_restore_tabs(tmp_path) -> None:
    session = _session([_group("g1", 1, ["https://a.com", "https://a.com/"])])
    with tablitz.TabStore(tmp_path / "store.db") as store:
        store.insert_session(session)
        tablitz.apply_dedup(store, tablitz.dedup_session(store.read_session()))
        store.insert_session(session)
        assert store.tab_count() == 1


def test_default_data_dir(tmp_path) -> None:
    assert tablitz.default_data_dir({"TABLITZ_HOME": str(tmp_path)}) == tmp_path
    assert tablitz.default_data_dir({}, system="Linux", home=tmp_path) == tmp_path / ".local" / "share" / "tablitz"
    assert tablitz.default_data_dir({}, system="Darwin", home=tmp_path) == (
        tmp_path / "Library" / "Application Support" / "tablitz"
    )


def test_open_default_uses_tablitz_home(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TABLITZ_HOME", str(tmp_path / "home"))
    with tablitz.TabStore.open_default() as store:
        assert store.db_path == tmp_path / "home" / "tablitz.db"
    assert (tmp_path / "home" / "tablitz.db").exists()
