"""Unit tests for the local package host."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_zip, plugin_zip, theme_header, write_plugin
from hatchway.updates.host import (
    LocalPackageHost,
    PackageHost,
    PackageType,
    find_marker,
    read_headers,
    safe_members,
)
from hatchway.utils.exceptions import ArchiveError, InstallError


def _archive(tmp_path: Path, data: bytes, name: str = "package.zip") -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


def test_read_headers(tmp_path: Path) -> None:
    main = tmp_path / "widget.php"
    main.write_text(
        "<?php\n/**\n * Plugin Name: Widget */\n * Version:   1.4.2\n"
        " * Update URI: https://github.com/acme/widget\n */\n"
    )

    headers = read_headers(main, {"name": "Plugin Name", "version": "Version", "uri": "Update URI"})

    assert headers == {
        "name": "Widget",
        "version": "1.4.2",
        "uri": "https://github.com/acme/widget",
    }


def test_find_marker(tmp_path: Path) -> None:
    plugin = write_plugin(tmp_path, "widget", "1.0.0")
    (plugin / "helpers.php").write_text("<?php // no header")
    theme = tmp_path / "my-theme"
    theme.mkdir()

    assert find_marker(plugin, PackageType.PLUGIN).name == "widget.php"
    assert find_marker(theme, PackageType.THEME) is None
    (theme / "style.css").write_text(theme_header("My Theme", "1.0.0"))
    assert find_marker(theme, "theme").name == "style.css"


@pytest.mark.parametrize("name", ["../evil.php", "/etc/passwd", "C:/evil", "a/../../b"])
def test_safe_members_rejects_traversal(name: str) -> None:
    with pytest.raises(ArchiveError):
        safe_members(["widget/widget.php", name])


def test_local_host_is_a_package_host(host: LocalPackageHost) -> None:
    assert isinstance(host, PackageHost)


def test_install_new_package(host: LocalPackageHost, tmp_path: Path) -> None:
    archive = _archive(tmp_path, plugin_zip("widget", "1.0.0"))

    path = host.install_from_archive(archive, "widget", PackageType.PLUGIN)

    assert path == host.plugins_dir / "widget"
    assert (path / "widget.php").is_file()
    assert host.installed_version("widget", PackageType.PLUGIN) == "1.0.0"
    assert host.backups.list_backups() == []
    assert [p.name for p in host.plugins_dir.iterdir()] == ["widget"]


def test_install_replaces_and_backs_up(host: LocalPackageHost, tmp_path: Path) -> None:
    installed = write_plugin(host.plugins_dir, "widget", "1.0.0")
    (installed / "stale.php").write_text("<?php")
    archive = _archive(tmp_path, plugin_zip("widget", "1.1.0"))

    host.install_from_archive(archive, "widget", PackageType.PLUGIN)

    assert host.installed_version("widget", PackageType.PLUGIN) == "1.1.0"
    assert not (host.plugins_dir / "widget" / "stale.php").exists()
    assert [b.slug for b in host.backups.list_backups()] == ["widget"]
    assert [p.name for p in host.plugins_dir.iterdir()] == ["widget"]


def test_install_without_overwrite(host: LocalPackageHost, tmp_path: Path) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    archive = _archive(tmp_path, plugin_zip("widget", "1.1.0"))

    with pytest.raises(InstallError):
        host.install_from_archive(archive, "widget", PackageType.PLUGIN, overwrite=False)

    assert host.installed_version("widget", PackageType.PLUGIN) == "1.0.0"


def test_install_rejects_bad_archives(host: LocalPackageHost, tmp_path: Path) -> None:
    write_plugin(host.plugins_dir, "widget", "1.0.0")
    two_roots = _archive(tmp_path, make_zip({"a/a.php": "x", "b/b.php": "y"}), "two.zip")
    not_zip = _archive(tmp_path, b"not a zip", "bad.zip")

    for archive in (two_roots, not_zip):
        with pytest.raises(InstallError):
            host.install_from_archive(archive, "widget", PackageType.PLUGIN)

    assert host.installed_version("widget", PackageType.PLUGIN) == "1.0.0"
    assert [p.name for p in host.plugins_dir.iterdir()] == ["widget"]


@pytest.mark.parametrize("slug", ["", "..", "a/b", "."])
def test_install_rejects_bad_slug(host: LocalPackageHost, tmp_path: Path, slug: str) -> None:
    archive = _archive(tmp_path, plugin_zip("widget", "1.0.0"))

    with pytest.raises(InstallError):
        host.install_from_archive(archive, slug, PackageType.PLUGIN)


def test_discover_packages(host: LocalPackageHost) -> None:
    """Only packages that declare an update URI are managed."""
    write_plugin(host.plugins_dir, "widget", "1.0.0", repository="acme/widget")
    write_plugin(host.plugins_dir, "local-only", "2.0.0", repository="")
    theme = host.themes_dir / "my-theme"
    theme.mkdir(parents=True)
    (theme / "style.css").write_text(theme_header("My Theme", "", "Acme/Theme"))
    (host.plugins_dir / ".widget.staging-x").mkdir()

    packages = host.discover_packages()

    assert [(p.slug, p.type, p.repository) for p in packages] == [
        ("widget", PackageType.PLUGIN, "acme/widget"),
        ("my-theme", PackageType.THEME, "acme/theme"),
    ]
    assert packages[0].installed_version == "1.0.0"
    assert packages[0].name == "Widget"
    assert packages[1].installed_version == "0.0.0"


def test_discover_packages_without_directories(tmp_path: Path) -> None:
    host = LocalPackageHost(tmp_path / "none", tmp_path / "none-either")

    assert host.discover_packages() == []
    assert host.installed_version("widget", PackageType.PLUGIN) is None
