"""Unit tests for update checks, installs and rollbacks."""

from __future__ import annotations

import pytest

from conftest import plugin_zip, write_plugin
from hatchway.security.credentials import CredentialRecord
from hatchway.updates.host import LocalPackageHost, PackageType
from hatchway.updates.installer import PACKAGES_CACHE_KEY, InstallStage, PackageInstaller
from hatchway.updates.pipeline import InstallOutcome, UpdatePipeline
from hatchway.updates.releases import ReleaseResolver
from hatchway.updates.resolver import RepositoryResolver
from hatchway.utils.exceptions import NotFoundError


@pytest.fixture
def pipeline(host: LocalPackageHost, credential_store, broker, store, clock, tmp_path) -> UpdatePipeline:
    return UpdatePipeline(
        host,
        RepositoryResolver(credential_store, clock=clock),
        ReleaseResolver(broker, store),
        PackageInstaller(host, broker, store, temp_dir=tmp_path / "tmp"),
        store,
    )


def test_discover_packages_resolves_owner(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord, store
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0", repository="acme/widget")
    write_plugin(host.plugins_dir, "orphan", "1.0.0", repository="someone/orphan")

    packages = {p.slug: p for p in pipeline.discover_packages()}

    assert packages["widget"].owner_credential_id == installed_record.id
    assert packages["orphan"].owner_credential_id is None
    assert store.get(PACKAGES_CACHE_KEY) is not None


def test_discover_packages_cached_until_forced(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    assert len(pipeline.discover_packages()) == 1

    write_plugin(host.plugins_dir, "gadget", "1.0.0", repository="acme/gadget")
    assert len(pipeline.discover_packages()) == 1
    assert len(pipeline.discover_packages(force=True)) == 2


def test_check_for_updates_emits_newer_release(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release("acme/widget", "v1.1.0", published_at=clock() - 10)

    candidates = pipeline.check_for_updates()

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.slug == "widget"
    assert candidate.type is PackageType.PLUGIN
    assert candidate.credential_id == installed_record.id
    assert candidate.channel == "stable"
    assert candidate.installed_version == "1.0.0"
    assert candidate.available_version == "1.1.0"
    assert candidate.tag == "v1.1.0"
    assert candidate.download_url.endswith("/releases/assets/1")


def test_check_for_updates_same_version(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    """An installed version equal to the latest release is not an update."""
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release("acme/widget", "v1.0.0", published_at=clock() - 10)

    assert pipeline.check_for_updates() == []


def test_check_for_updates_skips_unmanaged(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github
) -> None:
    write_plugin(host.plugins_dir, "orphan", "1.0.0", repository="someone/orphan")

    assert pipeline.check_for_updates() == []
    assert fake_github.requests == []


def test_check_for_updates_beta_channel(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release("acme/widget", "v1.0.0", published_at=clock() - 20)
    fake_github.add_release("acme/widget", "v1.1.0-beta.1", published_at=clock() - 10, prerelease=True)

    assert pipeline.check_for_updates() == []

    pipeline._releases.set_channel("acme/widget", "beta")
    candidates = pipeline.check_for_updates()
    assert [c.tag for c in candidates] == ["v1.1.0-beta.1"]


def test_install_version(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release(
        "acme/widget", "v1.1.0", published_at=clock() - 10, archive=plugin_zip("widget", "1.1.0")
    )

    outcome = pipeline.install_version("acme/widget", "1.1.0")

    assert outcome.success
    assert outcome.stage is InstallStage.SUCCESS
    assert outcome.version == "1.1.0"
    assert outcome.reason is None
    assert host.installed_version("widget", PackageType.PLUGIN) == "1.1.0"
    assert pipeline.find_package("acme/widget").installed_version == "1.1.0"


def test_install_version_missing_release(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")

    outcome = pipeline.install_version("acme/widget", "v9.0.0")

    assert not outcome.success
    assert outcome.reason == "NotFoundError"
    assert outcome.version == "9.0.0"
    assert outcome.stage is InstallStage.RESOLVING


def test_install_version_not_installed(pipeline: UpdatePipeline, installed_record: CredentialRecord) -> None:
    outcome = pipeline.install_version("acme/widget", "1.0.0")

    assert outcome.reason == "NotFoundError"
    assert "No installed package" in outcome.message


def test_install_version_without_credential(pipeline: UpdatePipeline, host: LocalPackageHost) -> None:
    write_plugin(host.plugins_dir, "orphan", "1.0.0", repository="someone/orphan")

    assert pipeline.install_version("someone/orphan", "1.0.0").reason == "CredentialError"


def test_rollback_to_previous_release(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.1.0")
    fake_github.add_release(
        "acme/widget", "v1.0.0", published_at=clock() - 20, archive=plugin_zip("widget", "1.0.0")
    )
    fake_github.add_release("acme/widget", "v1.1.0", published_at=clock() - 10)

    outcome = pipeline.rollback("acme/widget")

    assert outcome.success
    assert outcome.version == "1.0.0"
    assert host.installed_version("widget", PackageType.PLUGIN) == "1.0.0"
    assert [b.slug for b in host.backups.list_backups()] == ["widget"]


def test_rollback_to_explicit_version(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.2.0")
    fake_github.add_release(
        "acme/widget", "v1.0.0", published_at=clock() - 30, archive=plugin_zip("widget", "1.0.0")
    )
    fake_github.add_release("acme/widget", "v1.1.0", published_at=clock() - 20)
    fake_github.add_release("acme/widget", "v1.2.0", published_at=clock() - 10)

    assert pipeline.rollback("acme/widget", "v1.0.0").success
    assert host.installed_version("widget", PackageType.PLUGIN) == "1.0.0"


def test_rollback_without_older_release(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release("acme/widget", "v1.0.0", published_at=clock() - 10)

    outcome = pipeline.rollback("acme/widget")

    assert not outcome.success
    assert isinstance(outcome.error, NotFoundError)
    assert outcome.version == "1.0.0"


def test_install_outcome_helpers() -> None:
    outcome = InstallOutcome.failed("acme/widget", NotFoundError("gone"), version="1.0.0")

    assert not outcome.success
    assert outcome.reason == "NotFoundError"
    assert outcome.message == "gone"
    assert InstallOutcome(success=True, repository="acme/widget").message == ""


def test_check_for_updates_reads_quota_first(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        broker, fake_github, clock
) -> None:
    """An unknown quota is read from the rate-limit endpoint once, before any release call."""
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    fake_github.add_release("acme/widget", "v1.1.0", published_at=clock() - 10)
    fake_github.rate_remaining = 4321

    pipeline.check_for_updates()
    pipeline.check_for_updates()

    paths = [r.url.path for r in fake_github.requests]
    assert paths.count("/rate_limit") == 1
    assert paths.index("/rate_limit") < paths.index("/repos/acme/widget/releases")
    assert broker.api.rate_limiter.remaining == 4321


def test_check_for_updates_ignores_older_release(
        pipeline: UpdatePipeline, host: LocalPackageHost, installed_record: CredentialRecord,
        fake_github, clock
) -> None:
    write_plugin(host.plugins_dir, "widget", "2.0.0")
    fake_github.add_release("acme/widget", "v1.1.0", published_at=clock() - 10)

    assert pipeline.check_for_updates() == []
