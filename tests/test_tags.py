import pytest

from consulsync.config import KindDefault, ServiceCheck, ServiceDeclaration
from consulsync.errors import ConfigError
from consulsync.tags import PLACEHOLDER, merge_tags, resolve, resolve_all, tag_key


def _kinds(*kinds):
    return {k.name: k for k in kinds}


HTTP = KindDefault(
    name="http",
    port=80,
    tags=(
        "traefik.enable=true",
        "traefik.http.routers.SERVICE_NAME.rule=Host(`SERVICE_NAME.example.com`)",
        "role=secondary",
        "public",
    ),
)


def test_tag_key():
    assert tag_key("role=primary") == "role"
    assert tag_key("a=b=c") == "a"
    assert tag_key("public") is None


def test_service_tag_replaces_default_in_place():
    svc = resolve(ServiceDeclaration(name="web", kind="http", address="10.0.0.1", tags=("role=primary",)), _kinds(HTTP))
    assert svc.tags == (
        "traefik.enable=true",
        "traefik.http.routers.web.rule=Host(`web.example.com`)",
        "role=primary",
        "public",
    )


def test_unmatched_service_tags_are_appended():
    svc = resolve(ServiceDeclaration(name="web", kind="http", address="h", tags=("zone=a", "canary")), _kinds(HTTP))
    assert svc.tags[-2:] == ("zone=a", "canary")
    assert "role=secondary" in svc.tags


def test_later_service_tag_with_same_key_wins():
    svc = resolve(
        ServiceDeclaration(name="web", kind="http", address="h", tags=("zone=a", "zone=b", "role=x", "role=y")),
        _kinds(HTTP),
    )
    keys = [tag_key(t) for t in svc.tags if tag_key(t)]
    assert len(keys) == len(set(keys))
    assert "zone=b" in svc.tags and "zone=a" not in svc.tags
    assert "role=y" in svc.tags


def test_keys_are_compared_after_name_substitution():
    svc = resolve(
        ServiceDeclaration(
            name="web", kind="http", address="h", tags=("traefik.http.routers.web.rule=Host(`www.example.com`)",)
        ),
        _kinds(HTTP),
    )
    rules = [t for t in svc.tags if t.startswith("traefik.http.routers.web.rule=")]
    assert rules == ["traefik.http.routers.web.rule=Host(`www.example.com`)"]


def test_placeholder_never_survives():
    decls = [
        ServiceDeclaration(name=n, kind="http", address="h", tags=(f"x-{PLACEHOLDER}=1", PLACEHOLDER))
        for n in ("a", "b", "c")
    ]
    for svc in resolve_all(decls, _kinds(HTTP)):
        assert not any(PLACEHOLDER in t for t in svc.tags)
        assert f"x-{svc.name}=1" in svc.tags
        assert svc.name in svc.tags


def test_duplicate_flags_are_not_repeated():
    assert merge_tags(["public"], ["public", "internal"], "web") == ["public", "internal"]


def test_fields_fall_back_to_kind():
    kind = KindDefault(name="db", port=5432, address="10.0.0.3", check=ServiceCheck(timeout="2s"))
    svc = resolve(ServiceDeclaration(name="pg", kind="db"), _kinds(kind))
    assert (svc.address, svc.port) == ("10.0.0.3", 5432)
    assert svc.check.timeout_s == 2.0

    own = resolve(ServiceDeclaration(name="pg", kind="db", port=6432, address="10.0.0.4"), _kinds(kind))
    assert (own.address, own.port) == ("10.0.0.4", 6432)


def test_meta_merges_with_service_winning():
    kind = KindDefault(name="k", port=1, meta={"team": "a", "tier": "1"})
    svc = resolve(ServiceDeclaration(name="s", kind="k", address="h", meta={"team": "b"}), _kinds(kind))
    assert dict(svc.meta) == {"team": "b", "tier": "1"}


def test_missing_port_is_a_config_error():
    kind = KindDefault(name="bare")
    with pytest.raises(ConfigError, match="no port"):
        resolve(ServiceDeclaration(name="s", kind="bare", address="h"), _kinds(kind))


def test_missing_address_is_a_config_error():
    with pytest.raises(ConfigError, match="no address"):
        resolve(ServiceDeclaration(name="s", kind="http"), _kinds(HTTP))


def test_unknown_kind_is_a_config_error():
    with pytest.raises(ConfigError, match="undefined kind"):
        resolve(ServiceDeclaration(name="s", kind="nope", address="h", port=1), _kinds(HTTP))


def test_probe_target_uses_check_tcp():
    kind = KindDefault(name="k", port=80, check=ServiceCheck(tcp="SERVICE_NAME.internal:9000"))
    svc = resolve(ServiceDeclaration(name="web", kind="k", address="10.0.0.1"), _kinds(kind))
    assert svc.probe_target == ("web.internal", 9000)

    plain = resolve(ServiceDeclaration(name="web", kind="http", address="10.0.0.1"), _kinds(HTTP))
    assert plain.probe_target == ("10.0.0.1", 80)


def test_bad_check_tcp_is_a_config_error():
    kind = KindDefault(name="k", port=80, check=ServiceCheck(tcp="no-port-here"))
    with pytest.raises(ConfigError, match="host:port"):
        resolve(ServiceDeclaration(name="web", kind="k", address="10.0.0.1"), _kinds(kind))


def test_defaults_colliding_after_substitution_keep_one_key():
    kind = KindDefault(name="k", port=80, tags=("route.SERVICE_NAME=a", "route.web=b", "edge"))
    svc = resolve(ServiceDeclaration(name="web", kind="k", address="h"), _kinds(kind))
    assert svc.tags == ("route.web=b", "edge")

    other = resolve(ServiceDeclaration(name="api", kind="k", address="h"), _kinds(kind))
    assert other.tags == ("route.api=a", "route.web=b", "edge")


def test_no_duplicate_keys_for_any_service_name():
    kind = KindDefault(
        name="k", port=80, tags=("x.SERVICE_NAME=1", "x.a=2", "x.b=3", "SERVICE_NAME=4", "a=5")
    )
    for name in ("a", "b", "c"):
        svc = resolve(ServiceDeclaration(name=name, kind="k", address="h", tags=("x.c=9",)), _kinds(kind))
        keys = [tag_key(t) for t in svc.tags if tag_key(t)]
        assert len(keys) == len(set(keys))
