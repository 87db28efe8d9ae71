"""
Unit tests for the work set aggregation in envlet.core.aggregator.
"""

from datetime import timedelta

import pytest

from envlet.core.aggregator import aggregate
from envlet.core.context import SyncContext
from envlet.core.parser import ManifestParser


def parse(text, **kwargs):
    return ManifestParser().parse(text, **kwargs)


def test_forge_releases_are_deduplicated_by_key():
    manifests = {
        "production": parse("mod 'puppetlabs/apt', '2.3.0'\nmod 'puppetlabs/ntp'"),
        "staging": parse("mod 'puppetlabs-apt', '2.3.0'\nmod 'puppetlabs/ntp', '1.0.0'"),
    }
    context = SyncContext()

    work = aggregate(manifests, context)

    assert sorted(work.forge) == [
        "puppetlabs-apt-2.3.0",
        "puppetlabs-ntp-1.0.0",
        "puppetlabs-ntp-present",
    ]
    assert context.forge_keys == set(work.forge)
    assert work.total == 3


def test_git_remotes_are_deduplicated_by_url():
    manifests = {
        "production": parse("mod 'foo', :git => 'https://example.com/foo.git', :branch => 'prod'"),
        "staging": parse("mod 'foo', :git => 'https://example.com/foo.git', :branch => 'dev'"),
    }

    work = aggregate(manifests, SyncContext())

    assert list(work.git) == ["https://example.com/foo.git"]
    # first environment in name order owns the work item
    assert work.git["https://example.com/foo.git"].branch == "prod"


def test_local_modules_are_not_work_items():
    work = aggregate({"production": parse("mod 'site', :local => true")}, SyncContext())
    assert work.git == {}


def test_manifest_settings_are_propagated_to_copies():
    manifest = parse(
        "forge.baseUrl 'https://forge.example.com'\n"
        "forge.cacheTtl 1h\n"
        "mod 'puppetlabs/ntp'\n"
        "mod 'foo', :git => 'git@example.com:foo.git'",
        private_key="/etc/keys/deploy",
    )

    work = aggregate({"production": manifest}, SyncContext())

    forge = work.forge["puppetlabs-ntp-present"]
    assert forge.base_url == "https://forge.example.com"
    assert forge.cache_ttl == timedelta(hours=1)
    assert work.git["git@example.com:foo.git"].private_key == "/etc/keys/deploy"
    # the manifest itself is left untouched
    assert manifest.forge_modules["ntp"].base_url is None
    assert manifest.git_modules["foo"].private_key is None


def test_defaults_apply_when_manifest_sets_none():
    work = aggregate(
        {"production": parse("mod 'puppetlabs/ntp', :latest")},
        SyncContext(),
        forge_base_url="https://forgeapi.example.com",
        forge_cache_ttl=timedelta(minutes=5),
    )

    spec = work.forge["puppetlabs-ntp-latest"]
    assert spec.base_url == "https://forgeapi.example.com"
    assert spec.cache_ttl == timedelta(minutes=5)


@pytest.mark.asyncio
async def test_aggregate_resets_the_context():
    context = SyncContext()
    await context.latest.set("puppetlabs-ntp", "9.9.9")
    context.forge_keys.add("stale-key")

    aggregate({"production": parse("mod 'puppetlabs/apt', '1.0.0'")}, context)

    assert len(context.latest) == 0
    assert context.forge_keys == {"puppetlabs-apt-1.0.0"}
