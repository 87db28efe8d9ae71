"""
Unit tests for envlet.services.git.

Most tests replace ``execute_command``; the last ones drive a real ``git``
binary against a throwaway local repository.
"""

import shutil
import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from envlet.core.context import SyncContext
from envlet.infrastructure.command import ExecResult
from envlet.infrastructure.error_handler import RemoteUnreachableError
from envlet.models import DeployConfig, GitModuleSpec
from envlet.services.git import HASH_FILE, GitMirrorService, needs_ssh_key
from envlet.services.materializer import Materializer


def make_service(tmp_path, **settings):
    config = DeployConfig(cache_dir=tmp_path / "cache", **settings)
    config.ensure_cache_dirs()
    return GitMirrorService(config, SyncContext(), Materializer())


def ok(output=""):
    return ExecResult(0, output)


def failed(output="fatal: could not read from remote repository"):
    return ExecResult(128, output)


@pytest.mark.parametrize(
    "url, key, agent, expected",
    [
        ("git@github.com:example/ntp.git", "/keys/id_rsa", False, True),
        ("ssh://git@example.com/ntp.git", "/keys/id_rsa", False, True),
        ("https://github.com/example/ntp.git", "/keys/id_rsa", False, False),
        ("git@github.com:example/ntp.git", None, False, False),
        ("git@github.com:example/ntp.git", "/keys/id_rsa", True, False),
    ],
)
def test_needs_ssh_key(url, key, agent, expected):
    assert needs_ssh_key(url, key, agent) is expected


@pytest.mark.asyncio
async def test_new_remote_is_cloned_as_mirror(tmp_path):
    service = make_service(tmp_path)
    mirror = service.mirror_dir("https://example.com/ntp.git")

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=ok())) as execute:
        assert await service.mirror_or_update("https://example.com/ntp.git", mirror) is True

    args = execute.call_args.args[0]
    assert args == ["git", "clone", "--mirror", "https://example.com/ntp.git", str(mirror)]
    assert mirror.name == "https-__example.com_ntp.git"


@pytest.mark.asyncio
async def test_existing_mirror_is_updated(tmp_path):
    service = make_service(tmp_path)
    mirror = tmp_path / "mirror.git"
    mirror.mkdir()

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=ok())) as execute:
        await service.mirror_or_update("https://example.com/ntp.git", mirror)

    assert execute.call_args.args[0] == ["git", "--git-dir", str(mirror), "remote", "update", "--prune"]


@pytest.mark.asyncio
async def test_failed_update_is_retried_with_fresh_clone(tmp_path):
    service = make_service(tmp_path, retry_git_commands=True)
    mirror = tmp_path / "mirror.git"
    mirror.mkdir()
    (mirror / "HEAD").write_text("broken")

    execute = AsyncMock(side_effect=[failed(), ok()])
    with patch("envlet.services.git.execute_command", new=execute):
        assert await service.mirror_or_update("https://example.com/ntp.git", mirror) is True

    assert not mirror.exists()
    assert execute.call_args_list[1].args[0][:3] == ["git", "clone", "--mirror"]


@pytest.mark.asyncio
async def test_unreachable_remote(tmp_path, caplog):
    service = make_service(tmp_path)
    mirror = tmp_path / "mirror.git"

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=failed())):
        with pytest.raises(RemoteUnreachableError, match="does not exist or is unreachable"):
            await service.mirror_or_update("https://example.com/gone.git", mirror)

        with caplog.at_level("WARNING"):
            assert await service.mirror_or_update("https://example.com/gone.git", mirror, allow_fail=True) is False

    assert "https://example.com/gone.git does not exist" in caplog.text


@pytest.mark.asyncio
async def test_resolve_honours_ignore_unreachable(tmp_path):
    service = make_service(tmp_path, ignore_unreachable_modules=True)

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=failed())):
        assert await service.resolve(GitModuleSpec(git="https://example.com/gone.git")) is False


@pytest.mark.asyncio
async def test_private_key_wraps_command(tmp_path):
    service = make_service(tmp_path)
    spec = GitModuleSpec(git="git@example.com:ntp.git", private_key="/keys/id_rsa")

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=ok())) as execute:
        await service.resolve(spec)

    args = execute.call_args.args[0]
    assert args[:3] == ["ssh-agent", "bash", "-c"]
    assert args[3].startswith("ssh-add /keys/id_rsa; git clone --mirror git@example.com:ntp.git")


@pytest.mark.asyncio
async def test_unchanged_commit_is_a_noop(tmp_path):
    service = make_service(tmp_path)
    target = tmp_path / "modules" / "ntp"
    target.mkdir(parents=True)
    (target / HASH_FILE).write_text("abc123")

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=ok("abc123"))):
        assert await service.sync_to_module_dir(tmp_path / "mirror.git", target, "main") is False

    assert service.context.statistics.sync_git_count == 1
    assert service.context.statistics.need_sync_git_count == 0


@pytest.mark.asyncio
async def test_unresolvable_tree(tmp_path):
    service = make_service(tmp_path)
    target = tmp_path / "modules" / "ntp"

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=failed("bad revision"))):
        assert await service.sync_to_module_dir(tmp_path / "m.git", target, "nope", allow_fail=True) is None
        with pytest.raises(RemoteUnreachableError, match="Could not resolve tree nope"):
            await service.sync_to_module_dir(tmp_path / "m.git", target, "nope")


@pytest.mark.asyncio
async def test_dry_run_only_counts(tmp_path):
    service = make_service(tmp_path, dry_run=True)
    target = tmp_path / "environments" / "production"

    with patch("envlet.services.git.execute_command", new=AsyncMock(return_value=ok("abc123"))):
        changed = await service.sync_to_module_dir(tmp_path / "m.git", target, "production", control_repo=True)

    assert changed is True
    assert not target.exists()
    assert service.context.statistics.need_sync_env_count == 1
    assert service.context.changed_dirs == set()


@pytest.mark.asyncio
async def test_fallback_branches_are_tried_in_order(tmp_path):
    service = make_service(tmp_path)
    spec = GitModuleSpec(git="https://example.com/ntp.git", branch="feature", fallback=["develop", "main"])
    sync = AsyncMock(side_effect=[None, None, True])

    with patch.object(service, "sync_to_module_dir", new=sync):
        assert await service.sync_module(spec, tmp_path / "ntp") is True

    trees = [call.args[2] for call in sync.call_args_list]
    tolerate = [call.args[3] for call in sync.call_args_list]
    assert trees == ["feature", "develop", "main"]
    assert tolerate == [True, True, False]


@pytest.mark.asyncio
async def test_link_module_follows_environment_branch(tmp_path):
    service = make_service(tmp_path)
    spec = GitModuleSpec(git="https://example.com/hiera.git", link=True)
    sync = AsyncMock(return_value=True)

    with patch.object(service, "sync_to_module_dir", new=sync):
        await service.sync_module(spec, tmp_path / "hiera", environment_branch="staging")
        await service.sync_module(GitModuleSpec(git="https://example.com/hiera.git"), tmp_path / "hiera")

    assert sync.call_args_list[0].args[2] == "staging"
    assert sync.call_args_list[1].args[2] == "HEAD"


####
##      REAL GIT
#####
def git(*args, cwd):
    subprocess.run(
        ["git", "-c", "user.name=envlet", "-c", "user.email=envlet@example.com",
         "-c", "commit.gpgsign=false", *args],
        cwd=cwd, check=True, capture_output=True,
    )


@pytest.fixture
def upstream(tmp_path):
    """A local repository with a ``main`` and a ``dev`` branch."""
    repo = tmp_path / "upstream"
    repo.mkdir()
    git("init", "-q", cwd=repo)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo)
    (repo / "manifests").mkdir()
    (repo / "manifests" / "init.pp").write_text("class ntp {}\n")
    git("add", ".", cwd=repo)
    git("commit", "-q", "-m", "main", cwd=repo)
    git("checkout", "-q", "-b", "dev", cwd=repo)
    (repo / "manifests" / "dev.pp").write_text("class ntp::dev {}\n")
    git("add", ".", cwd=repo)
    git("commit", "-q", "-m", "dev", cwd=repo)
    return repo


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
@pytest.mark.asyncio
async def test_two_environments_share_one_mirror(tmp_path, upstream):
    service = make_service(tmp_path)
    url = str(upstream)
    production = tmp_path / "environments" / "production" / "modules" / "ntp"
    development = tmp_path / "environments" / "development" / "modules" / "ntp"

    assert await service.resolve(GitModuleSpec(git=url)) is True
    assert await service.branches(service.mirror_dir(url)) == ["dev", "main"]

    assert await service.sync_module(GitModuleSpec(git=url, branch="main"), production, environment="production")
    assert await service.sync_module(GitModuleSpec(git=url, branch="dev"), development, environment="development")

    assert (production / "manifests" / "init.pp").is_file()
    assert not (production / "manifests" / "dev.pp").exists()
    assert (development / "manifests" / "dev.pp").is_file()
    assert len((production / HASH_FILE).read_text()) == 40
    assert service.context.changed_envs == {"production", "development"}

    # second run with the same commit
    assert await service.sync_module(GitModuleSpec(git=url, branch="main"), production) is False

    tree = await service.list_tree(service.mirror_dir(url), "dev")
    assert sorted(tree) == ["manifests", "manifests/dev.pp", "manifests/init.pp"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
@pytest.mark.asyncio
async def test_mirror_update_sees_new_commits(tmp_path, upstream):
    service = make_service(tmp_path)
    url = str(upstream)
    target = tmp_path / "modules" / "ntp"
    await service.resolve(GitModuleSpec(git=url))
    await service.sync_module(GitModuleSpec(git=url, branch="dev"), target)

    (upstream / "manifests" / "extra.pp").write_text("")
    git("add", ".", cwd=upstream)
    git("commit", "-q", "-m", "extra", cwd=upstream)

    await service.resolve(GitModuleSpec(git=url))
    assert await service.sync_module(GitModuleSpec(git=url, branch="dev"), target) is True
    assert (target / "manifests" / "extra.pp").is_file()
