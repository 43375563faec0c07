import pytest

from kloset.resources import CURRENT_VERSIONS, ResourceType, parse_version, types


@pytest.mark.parametrize(
    "rtype, label",
    [
        (ResourceType.CONFIG, "config"),
        (ResourceType.VFS_BTREE, "vfs btree"),
        (ResourceType.XATTR_ENTRY, "xattr entry"),
        (ResourceType.BTREE_ROOT, "btree root"),
        (ResourceType.RANDOM, "random"),
    ],
)
def test_labels(rtype, label):
    assert str(rtype) == label


def test_types_order_and_bounds():
    all_types = types()
    assert all_types[0] is ResourceType.CONFIG
    assert all_types[-1] is ResourceType.RANDOM
    assert len(set(all_types)) == len(all_types)
    assert all(0 < int(t) < 256 for t in all_types)
    assert 8 not in [int(t) for t in all_types]


def test_values_fixed_by_format():
    assert ResourceType.CHUNK == 9
    assert ResourceType.RANDOM == 255
    assert ResourceType(4) is ResourceType.PACKFILE


def test_parse_version_ordering():
    assert parse_version("1.0.0") == parse_version("1.0.0")
    assert parse_version("1.0.0") < parse_version("1.0.1")
    assert parse_version("1.0.9") < parse_version("1.1.0")
    assert parse_version("1.9.9") < parse_version("2.0.0")


@pytest.mark.parametrize("text", ["", "1.0", "1.0.0.0", "a.b.c", "1.-1.0", "1.256.0"])
def test_parse_version_rejects(text):
    with pytest.raises(ValueError):
        parse_version(text)


def test_current_versions():
    assert CURRENT_VERSIONS[ResourceType.OBJECT] == parse_version("1.0.0")
    assert CURRENT_VERSIONS[ResourceType.CHUNK] == parse_version("1.0.0")
    assert ResourceType.RANDOM in CURRENT_VERSIONS