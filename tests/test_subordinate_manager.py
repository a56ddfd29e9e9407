import asyncio

import pytest

from subid_ldap_server.allocator import Slot
from subid_ldap_server.subordinate_manager import SubordinateManager, parse_subids, render_subids, subid_header

HEADER = "# Managed by subid-ldap: start=65537 range=65536"


def manager(tmp_path, **kwargs):
    return SubordinateManager(subuid_path=str(tmp_path / "subuid"), subgid_path=str(tmp_path / "subgid"), **kwargs)


def test_header():
    assert subid_header(65537, 65536) == HEADER
    assert "start=1000000 range=100000" in subid_header(1000000, 100000)


def test_is_managed(tmp_path, copy_fixture):
    fixture = copy_fixture("subuid1")
    assert asyncio.run(manager(tmp_path).is_managed(fixture))


def test_is_unmanaged(tmp_path, copy_fixture):
    fixture = copy_fixture("subuid1-unmanaged")
    assert not asyncio.run(manager(tmp_path).is_managed(fixture))

    empty = tmp_path / "empty"
    empty.touch()
    assert not asyncio.run(manager(tmp_path).is_managed(empty))


def test_is_managed_missing_file(tmp_path):
    assert asyncio.run(manager(tmp_path).is_managed(tmp_path / "dne"))


def test_is_managed_other_configuration(tmp_path, copy_fixture):
    fixture = copy_fixture("subuid1")
    assert not asyncio.run(manager(tmp_path, start=1000000, id_range=100000).is_managed(fixture))


def test_is_managed_unreadable(tmp_path):
    with pytest.raises(OSError):
        asyncio.run(manager(tmp_path).is_managed(tmp_path))


def test_load(tmp_path, copy_fixture):
    fixture = copy_fixture("subuid1")
    subids, skipped = asyncio.run(manager(tmp_path).load(fixture))
    assert len(subids) == 3
    assert subids[65537] == Slot(id=65537, count=65536, owner="1000")
    assert subids[196611].owner == "1003"
    assert skipped == 0


def test_load_bad_lines(tmp_path, copy_fixture):
    fixture = copy_fixture("subuid-bad")
    subids, skipped = asyncio.run(manager(tmp_path).load(fixture))
    assert list(subids) == [196611]
    assert subids[196611].owner == "1003"
    assert skipped == 4


def test_load_missing_file(tmp_path):
    assert asyncio.run(manager(tmp_path).load(tmp_path / "dne")) == ({}, 0)


def test_load_unreadable(tmp_path):
    with pytest.raises(OSError):
        asyncio.run(manager(tmp_path).load(tmp_path))


def test_parse_skips_header():
    subids, skipped = parse_subids(["# a:b:c", "1000:1:2", ""])
    assert subids == {1: Slot(id=1, count=2, owner="1000")}
    assert skipped == 0


def test_render_sorted_and_occupied_only():
    allocation = {
        131074: Slot(id=131074, count=65536, owner="1001"),
        65537: Slot(id=65537, count=65536, owner="1000"),
        196611: Slot(id=196611, count=65536),
    }
    assert render_subids(allocation, HEADER) == f"{HEADER}\n1000:65537:65536\n1001:131074:65536"


def test_save_and_load_round_trip(tmp_path):
    m = manager(tmp_path)
    allocation = {
        65537: Slot(id=65537, count=65536, owner="1000"),
        262148: Slot(id=262148, count=65536, owner="alice"),
        131074: Slot(id=131074, count=65536),
    }
    asyncio.run(m.save(allocation))
    loaded, _ = asyncio.run(m.load())
    assert loaded == {id: slot for id, slot in allocation.items() if not slot.free}
    first = m.subuid_path.read_text()
    asyncio.run(m.save(loaded))
    assert m.subuid_path.read_text() == first
    assert asyncio.run(m.is_managed())


def test_save_missing_directory(tmp_path):
    m = manager(tmp_path)
    with pytest.raises(OSError):
        asyncio.run(m.save({}, tmp_path / "dne" / "subuid"))


def test_mirror_missing_source(tmp_path):
    with pytest.raises(OSError):
        asyncio.run(manager(tmp_path).mirror())


def test_mirror_missing_destination_directory(tmp_path):
    m = SubordinateManager(subuid_path=str(tmp_path / "subuid"), subgid_path=str(tmp_path / "dne" / "subgid"))
    m.subuid_path.write_text(HEADER)
    with pytest.raises(OSError):
        asyncio.run(m.mirror())


def test_sync_new_file(tmp_path):
    m = manager(tmp_path)
    result = asyncio.run(m.sync(["1000", "1001", "1002", "1003"]))
    expected = f"{HEADER}\n1000:65537:65536\n1001:131074:65536\n1002:196611:65536\n1003:262148:65536"
    assert m.subuid_path.read_text() == expected
    assert m.subgid_path.read_bytes() == m.subuid_path.read_bytes()
    assert (result.added, result.removed) == (4, 0)


def test_sync_replaces_unmanaged_file(tmp_path, copy_fixture):
    copy_fixture("subuid1-unmanaged")
    m = manager(tmp_path)
    result = asyncio.run(m.sync(["1002", "1000"]))
    assert m.subuid_path.read_text() == f"{HEADER}\n1002:65537:65536\n1000:131074:65536"
    assert result.added == 2


def test_sync_existing(tmp_path, copy_fixture):
    copy_fixture("subuid2")
    m = manager(tmp_path)
    result = asyncio.run(m.sync(["1000", "1001", "1002"]))
    assert m.subuid_path.read_text() == f"{HEADER}\n1000:65537:65536\n1001:131074:65536\n1002:262148:65536"
    assert m.subgid_path.read_text() == m.subuid_path.read_text()
    assert (result.added, result.removed) == (0, 1)

    again = asyncio.run(m.sync(["1000", "1001", "1002"]))
    assert m.subuid_path.read_text() == f"{HEADER}\n1000:65537:65536\n1001:131074:65536\n1002:262148:65536"
    assert (again.added, again.removed) == (0, 0)


def test_sync_counts_skipped_lines(tmp_path, copy_fixture):
    copy_fixture("subuid-bad")
    result = asyncio.run(manager(tmp_path).sync(["1003"]))
    assert result.skipped == 4
    assert result.added == 0


def test_is_managed_requires_hash_prefix(tmp_path):
    path = tmp_path / "subuid"
    path.write_text(f"x {HEADER}\n1000:65537:65536")
    assert not asyncio.run(manager(tmp_path).is_managed(path))


def test_is_managed_header_not_first_line(tmp_path):
    path = tmp_path / "subuid"
    path.write_text(f"# local changes\n{HEADER}\n1000:65537:65536")
    assert not asyncio.run(manager(tmp_path).is_managed(path))


def test_load_invalid_utf8(tmp_path):
    path = tmp_path / "subuid"
    path.write_bytes(HEADER.encode() + b"\n1000:65537:65536\n\xff\xfe:1:2\n")
    subids, skipped = asyncio.run(manager(tmp_path).load(path))
    assert subids == {65537: Slot(id=65537, count=65536, owner="1000")}
    assert skipped == 1


def test_sync_replaces_binary_file(tmp_path):
    m = manager(tmp_path)
    m.subuid_path.write_bytes(b"\xff\xfe garbage\n")
    assert not asyncio.run(m.is_managed())
    result = asyncio.run(m.sync(["1000"]))
    assert m.subuid_path.read_text() == f"{HEADER}\n1000:65537:65536"
    assert result.added == 1


def test_parse_rejects_non_decimal_integers():
    subids, skipped = parse_subids([
        "1000:65_537:65536",
        "1001: 131074 :65536",
        "1002:196611:65_536",
        "1003:٢٦٢١٤٨:65536",
        "1004:+327685:65536",
    ])
    assert subids == {327685: Slot(id=327685, count=65536, owner="1004")}
    assert skipped == 4
