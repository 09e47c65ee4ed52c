import itertools

import dnshole
from dnshole import ListSource, Role, SourceResult, reconcile


def _result(role: Role, *domains: str, name: str = "list") -> SourceResult:
    return SourceResult(ListSource(name, 0, role), list(domains))


def test_reconcile_dedupes_and_sorts() -> None:
    results = [
        _result(Role.BLOCK, "example-ad.com"),
        _result(Role.BLOCK, "tracker.io", "example-ad.com"),
    ]

    assert reconcile(results) == ["example-ad.com", "tracker.io"]


def test_reconcile_subtracts_allowed() -> None:
    results = [
        _result(Role.BLOCK, "example-ad.com", "tracker.io"),
        _result(Role.ALLOW, "localhost", "tracker.io"),
    ]

    assert reconcile(results) == ["example-ad.com"]


def test_reconcile_is_case_sensitive() -> None:
    results = [
        _result(Role.BLOCK, "ads.example.com"),
        _result(Role.ALLOW, "ADS.example.com"),
    ]

    assert reconcile(results) == ["ads.example.com"]


def test_reconcile_does_not_match_wildcards() -> None:
    results = [
        _result(Role.BLOCK, "ads.example.com"),
        _result(Role.ALLOW, "*.example.com", "example.com"),
    ]

    assert reconcile(results) == ["ads.example.com"]


def test_reconcile_ignores_failed_sources() -> None:
    failed = SourceResult(ListSource("https://unreachable.invalid", 0, Role.BLOCK), error="boom")

    assert reconcile([failed, _result(Role.BLOCK, "a.com")]) == ["a.com"]


def test_reconcile_independent_of_order() -> None:
    results = [
        _result(Role.BLOCK, "c.com", "a.com", name="one"),
        _result(Role.BLOCK, "b.com", "a.com", "z.com", name="two"),
        _result(Role.ALLOW, "z.com", name="three"),
        _result(Role.ALLOW, "q.com", name="four"),
    ]
    expected = reconcile(results)

    for permutation in itertools.permutations(results):
        assert reconcile(list(permutation)) == expected


def test_reconcile_is_block_minus_allow() -> None:
    results = [
        _result(Role.BLOCK, "a.com", "b.com", "c.com", "a.com"),
        _result(Role.BLOCK, "d.com", "b.com"),
        _result(Role.ALLOW, "b.com", "e.com"),
        _result(Role.ALLOW, "d.com"),
    ]
    blocked = {d for r in results if r.source.role is Role.BLOCK for d in r.domains}
    allowed = {d for r in results if r.source.role is Role.ALLOW for d in r.domains}

    output = reconcile(results)

    assert set(output) == blocked - allowed
    assert not set(output) & allowed
    assert len(output) == len(set(output))
    assert output == sorted(output)


def test_reserved_result_protects_loopback_names() -> None:
    results = [
        _result(Role.BLOCK, "localhost", "0.0.0.0", "ip6-loopback", "ads.example.com"),
        dnshole.reserved_result(),
    ]

    assert reconcile(results) == ["ads.example.com"]
