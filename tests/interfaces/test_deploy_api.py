# tests/interfaces/test_deploy_api.py

import hashlib
import io
import json
import tarfile
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from envlet.infrastructure.command import ExecResult
from envlet.infrastructure.error_handler import DeployError, ForgeModuleNotFoundError, ManifestError
from envlet.interfaces.api import BRANCH_ENV_VAR, EnvironmentDeployer, postrun_arguments
from envlet.models import DeployConfig, DeployStatus, SourceConfig
from envlet.core.parser import ManifestParser
from envlet.services.environments import Environment

# ---- Fixtures and Test Helpers ----

def release_archive(slug, version):
    """
    Returns a gzipped release archive the way the registry serves it.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        content = json.dumps({"name": slug, "version": version}).encode()
        info = tarfile.TarInfo(f"{slug}-{version}/metadata.json")
        info.size = len(content)
        archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def forge_transport(releases):
    """
    Returns an httpx.MockTransport serving pinned ``releases`` (``slug-version``).
    """
    archives = {key: release_archive(*key.rsplit("-", 1)) for key in releases}

    def handler(request):
        name = request.url.path.rsplit("/", 1)[-1]
        if request.url.path.startswith("/v3/releases/") and name in archives:
            archive = archives[name]
            return httpx.Response(200, json={
                "version": name.rsplit("-", 1)[1],
                "file_md5": hashlib.md5(archive).hexdigest(),
                "file_size": len(archive),
            })
        if request.url.path.startswith("/v3/files/") and name[:-len(".tar.gz")] in archives:
            return httpx.Response(200, content=archives[name[:-len(".tar.gz")]])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def puppetfile(tmp_path):
    path = tmp_path / "control" / "Puppetfile"
    path.parent.mkdir()
    path.write_text("forge 'https://forge.test'\nmod 'puppetlabs/ntp', '6.4.0'\nmod 'puppetlabs/apt', '2.3.0'\n")
    return path


# ---- postrun ----

def test_postrun_placeholders():
    args = postrun_arguments(
        ["/usr/bin/notify", "$modifieddirs", "--envs=$modifiedenvs", "-b", "$branchparam"],
        ["/envs/a/modules/ntp", "/envs/b/modules/apt"],
        ["a", "b"],
        "production",
    )

    assert args == [
        "/usr/bin/notify", "/envs/a/modules/ntp", "/envs/b/modules/apt",
        "--envs=a b", "-b", "production",
    ]


def test_postrun_without_branch_or_changes():
    assert postrun_arguments(["run", "$modifiedenvs", "x$branchparam"], [], [], None) == ["run", "x"]


# ---- validation ----

def test_validate_manifest_is_strict(tmp_path):
    path = tmp_path / "Puppetfile"
    path.write_text("mod 'puppetlabs/ntp'\nthis is not a declaration\n")
    deployer = EnvironmentDeployer(DeployConfig(cache_dir=tmp_path / "cache"))

    with pytest.raises(ManifestError):
        deployer.validate_manifest(path)


def test_validate_manifest_returns_manifest(puppetfile, tmp_path):
    deployer = EnvironmentDeployer(DeployConfig(cache_dir=tmp_path / "cache"))

    manifest = deployer.validate_manifest(puppetfile)

    assert manifest.module_names == ["apt", "ntp"]
    assert not (tmp_path / "cache").exists()


# ---- single manifest deployment ----

@pytest.mark.asyncio
async def test_deploy_manifest(puppetfile, tmp_path):
    config = DeployConfig(cache_dir=tmp_path / "cache", postrun=["notify", "$modifieddirs"])
    deployer = EnvironmentDeployer(config, forge_transport=forge_transport(
        ["puppetlabs-ntp-6.4.0", "puppetlabs-apt-2.3.0"]
    ))
    modules = puppetfile.parent / "modules"
    (modules / "stale").mkdir(parents=True)

    with patch("envlet.interfaces.api.execute_command", new=AsyncMock(return_value=ExecResult(0, ""))) as execute:
        result = await deployer.deploy_manifest(puppetfile)
        postrun = execute.call_args.args[0]

        # second run is served from the cache
        again = await EnvironmentDeployer(config, forge_transport=forge_transport([])).deploy_manifest(puppetfile)

    assert result.status == DeployStatus.COMPLETED
    assert json.loads((modules / "ntp" / "metadata.json").read_text())["version"] == "6.4.0"
    assert (modules / "apt" / "metadata.json").is_file()
    assert not (modules / "stale").exists()
    assert result.changed_dirs == sorted([str(modules / "apt"), str(modules / "ntp")])
    assert result.statistics.need_sync_forge_count == 2
    assert postrun == ["notify", str(modules / "apt"), str(modules / "ntp")]

    assert again.changed_dirs == []
    assert not again.needs_sync


@pytest.mark.asyncio
async def test_deploy_manifest_dry_run(puppetfile, tmp_path):
    config = DeployConfig(cache_dir=tmp_path / "cache", dry_run=True, postrun=["notify"])
    deployer = EnvironmentDeployer(config, forge_transport=forge_transport(
        ["puppetlabs-ntp-6.4.0", "puppetlabs-apt-2.3.0"]
    ))

    with patch("envlet.interfaces.api.execute_command", new=AsyncMock()) as execute:
        result = await deployer.deploy_manifest(puppetfile)

    assert result.needs_sync
    assert result.dry_run
    assert not (puppetfile.parent / "modules" / "ntp").exists()
    execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_deploy_manifest_failure_is_recorded(puppetfile, tmp_path):
    deployer = EnvironmentDeployer(DeployConfig(cache_dir=tmp_path / "cache"),
                                   forge_transport=forge_transport([]))

    with pytest.raises(ForgeModuleNotFoundError):
        await deployer.deploy_manifest(puppetfile)

    assert deployer.last_result.status == DeployStatus.FAILED
    assert "404" in deployer.last_result.error_message


@pytest.mark.asyncio
async def test_deploy_manifest_link_branch_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "Puppetfile"
    path.write_text("mod 'hiera', :git => 'https://example.com/hiera.git', :link => true\n")
    monkeypatch.setenv(BRANCH_ENV_VAR, "staging")
    deployer = EnvironmentDeployer(DeployConfig(cache_dir=tmp_path / "cache"))

    with patch("envlet.interfaces.api.ResolutionOrchestrator") as orchestrator:
        instance = orchestrator.return_value
        instance.resolve = AsyncMock()
        instance.sync_environment = AsyncMock(return_value=set())
        await deployer.deploy_manifest(path)

    assert instance.sync_environment.call_args.kwargs["environment_branch"] == "staging"


# ---- environment deployment ----

@pytest.mark.asyncio
async def test_deploy_environments(tmp_path):
    env_dir = tmp_path / "envs" / "production"
    env_dir.mkdir(parents=True)
    manifest = ManifestParser().parse("forge 'https://forge.test'\nmod 'puppetlabs/ntp', '6.4.0'\n")
    environments = {
        "production": Environment("production", "example", "production", env_dir,
                                  manifest=manifest, tree_paths=["Puppetfile"]),
    }
    config = DeployConfig(cache_dir=tmp_path / "cache")
    deployer = EnvironmentDeployer(config, forge_transport=forge_transport(["puppetlabs-ntp-6.4.0"]))

    with patch("envlet.interfaces.api.EnvironmentDriver") as driver:
        driver.return_value.prepare = AsyncMock(return_value=environments)
        result = await deployer.deploy(branch="production")

    driver.return_value.prepare.assert_awaited_once_with(branch="production", environment=None)
    assert result.is_successful
    assert result.environments == ["production"]
    assert result.changed_environments == ["production"]
    assert (env_dir / "modules" / "ntp" / "metadata.json").is_file()


@pytest.mark.asyncio
async def test_deploy_error_marks_result_failed(tmp_path):
    deployer = EnvironmentDeployer(DeployConfig(cache_dir=tmp_path / "cache"))

    with patch("envlet.interfaces.api.EnvironmentDriver") as driver:
        driver.return_value.prepare = AsyncMock(side_effect=DeployError("Couldn't find specified branch"))
        with pytest.raises(DeployError):
            await deployer.deploy(branch="nope")

    assert deployer.last_result.status == DeployStatus.FAILED
    assert deployer.last_result.error_message == "Couldn't find specified branch"


@pytest.mark.asyncio
async def test_unreachable_source_keeps_deployed_environments(tmp_path):
    production = tmp_path / "envs" / "production"
    production.mkdir(parents=True)
    (production / "Puppetfile").write_text("")
    config = DeployConfig(
        cache_dir=tmp_path / "cache",
        sources={"example": SourceConfig(name="example", remote=str(tmp_path / "missing.git"),
                                         basedir=str(tmp_path / "envs"))},
    )
    deployer = EnvironmentDeployer(config)

    with patch("envlet.interfaces.api.EnvironmentDriver") as driver:
        driver.return_value.prepare = AsyncMock(return_value={})
        driver.return_value.unreachable_sources = {"example"}
        result = await deployer.deploy()

    assert result.is_successful
    assert (production / "Puppetfile").is_file()
