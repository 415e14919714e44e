"""Pytest configuration and fixtures for git-sparse-submodule tests"""

import os
import re
import subprocess
import sys
from pathlib import Path

import pytest

from git_sparse_submodule import GitError, GitRunner

LIB_DIR = Path(__file__).parent.parent / 'lib'
SCRIPT = LIB_DIR / 'git_sparse_submodule.py'


class TestEnvironment:
    """Test environment with helper functions"""

    def __init__(self, tmp_dir: Path):
        self.tmp = tmp_dir
        self.upstream = tmp_dir / "upstream"
        self.owner = tmp_dir / "owner"
        self.test_home = tmp_dir / "home"

    def run(self, cmd, cwd=None, check=True, capture_output=True):
        """Run a shell command"""
        if isinstance(cmd, str):
            result = subprocess.run(
                cmd,
                shell=True,
                cwd=cwd,
                capture_output=capture_output,
                text=True,
                check=check,
            )
        else:
            result = subprocess.run(
                cmd, cwd=cwd, capture_output=capture_output, text=True, check=check
            )
        return result

    def make_upstream(self, name, *files):
        """Create an upstream repo containing files, committed on master"""
        repo = self.upstream / name
        repo.mkdir(parents=True)
        self.run(['git', 'init', '--quiet'], cwd=repo)
        self.add_new_files(*files, cwd=repo)
        return repo

    def make_superproject(self, name='foo'):
        """Create an empty repo to hold submodules"""
        repo = self.owner / name
        repo.mkdir(parents=True)
        self.run(['git', 'init', '--quiet'], cwd=repo)
        return repo

    def clone_submodule(self, repo, name, path, url):
        """Clone url into path the way restore does, with its repo in .git/modules"""
        (repo / '.git' / 'modules').mkdir(parents=True, exist_ok=True)
        self.run(
            [
                'git',
                'clone',
                '--quiet',
                '--separate-git-dir',
                str(repo / '.git' / 'modules' / name),
                str(url),
                str(repo / path),
            ]
        )
        return repo / path

    def add_new_files(self, *files, cwd=None):
        """Add new files and commit"""
        for file in files:
            file_path = Path(cwd) / file if cwd else Path(file)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(f"new file {file}\n")
            self.run(['git', 'add', '--force', str(file)], cwd=cwd)
        # Commit with the last file name
        self.run(
            ['git', 'commit', '--quiet', '-m', f'add new file: {files[-1]}'], cwd=cwd
        )


@pytest.fixture(scope='function')
def env(tmp_path):
    """Setup test environment for each test"""
    test_env = TestEnvironment(tmp_path)

    # Set up temporary home directory for git config
    test_home = tmp_path / "home"
    test_home.mkdir()

    # Save original environment
    saved = {
        var: os.environ.get(var)
        for var in [
            'HOME',
            'GIT_CONFIG_GLOBAL',
            'GIT_CONFIG_SYSTEM',
            'GIT_CEILING_DIRECTORIES',
            'GIT_SPARSE_SUBMODULE_QUIET',
            'GIT_SPARSE_SUBMODULE_VERBOSE',
            'GIT_SPARSE_SUBMODULE_DEBUG',
        ]
    }
    orig_cwd = os.getcwd()

    # Set up environment
    os.environ['HOME'] = str(test_home)
    os.environ['GIT_CONFIG_GLOBAL'] = str(test_home / '.gitconfig')
    os.environ['GIT_CONFIG_SYSTEM'] = '/dev/null'
    os.environ['GIT_CEILING_DIRECTORIES'] = str(tmp_path)
    for var in [
        'GIT_SPARSE_SUBMODULE_QUIET',
        'GIT_SPARSE_SUBMODULE_VERBOSE',
        'GIT_SPARSE_SUBMODULE_DEBUG',
    ]:
        os.environ.pop(var, None)

    # Set up git configuration
    for key, value in [
        ('user.name', 'Test User'),
        ('user.email', 'test@example.com'),
        ('core.autocrlf', 'input'),
        ('init.defaultBranch', 'master'),
        ('advice.detachedHead', 'false'),
        ('color.ui', 'false'),
        ('protocol.file.allow', 'always'),
    ]:
        subprocess.run(['git', 'config', '--global', key, value], check=True)

    test_env.upstream.mkdir(parents=True)
    test_env.owner.mkdir(parents=True)

    yield test_env

    # Cleanup
    os.chdir(orig_cwd)
    for var, value in saved.items():
        if value is None:
            os.environ.pop(var, None)
        else:
            os.environ[var] = value


# Fakes
class FakeGit(GitRunner):
    """GitRunner that records commands instead of running git.

    'manifest' holds the .gitmodules values and 'config' the active config,
    both keyed like 'submodule.<name>.<key>'. 'sparse_lists' maps the paths
    of sparse working trees to their patterns.
    """

    def __init__(self, root, manifest=None, config=None, sparse_lists=None,
                 fail_on=None):
        super().__init__(str(root), quiet=True)
        self.manifest = dict(manifest or {})
        self.config = dict(config or {})
        self.sparse_lists = dict(sparse_lists or {})
        self.fail_on = fail_on
        self.calls = []

    def run(self, args, capture=False, fail=True, ok_codes=(0,)):
        self.calls.append(list(args))
        if self.fail_on and self.fail_on(args):
            raise GitError(f"Command failed: 'git {' '.join(args)}'.")

        if args[0] == 'config':
            return self._config(args[1:], fail)
        if args[0] == 'clone':
            os.makedirs(args[args.index('--separate-git-dir') + 1])
        elif args[:2] == ['submodule', 'init']:
            self._register(args[-1])
        elif args[-2:] == ['sparse-checkout', 'list']:
            path = args[args.index('-C') + 1]
            return ''.join(f'{line}\n' for line in self.sparse_lists.get(path, []))
        elif args[2:] == ['config', '--bool', 'core.sparseCheckout']:
            # git exits 1 when the setting is missing
            return 'true\n' if args[1] in self.sparse_lists else None
        elif args == ['rev-parse', '--show-toplevel']:
            return f'{self.root}\n'
        elif args == ['rev-parse', '--absolute-git-dir']:
            return f"{os.path.join(self.root, '.git')}\n"
        elif args == ['--version']:
            return 'git version 2.43.0\n'
        return '' if capture else None

    def _register(self, path):
        """Copy the url of the submodule at path into the active config"""
        for key, value in list(self.manifest.items()):
            if key.endswith('.path') and value == path:
                prefix = key[: -len('path')]
                # init keeps a url that is already registered
                self.config.setdefault(
                    f'{prefix}url', self.manifest.get(f'{prefix}url', '')
                )

    def _config(self, args, fail):
        store = self.config
        if args[0].startswith('--file='):
            store = self.manifest
            args = args[1:]

        if args[0] == '--unset':
            store.pop(args[1], None)
            return ''
        if len(args) == 2:
            store[args[0]] = args[1]
            return ''
        if args[0] in store:
            return f'{store[args[0]]}\n'
        if fail:
            raise GitError(f"Command failed: 'git config {args[0]}'.")
        return None

    def commands(self):
        """Recorded commands other than config reads and writes"""
        return [
            call
            for call in self.calls
            if call[0] != 'config' and call[2:3] != ['config']
        ]


def write_manifest(root, submodules):
    """Write a .gitmodules file and return its values as FakeGit expects them"""
    lines = []
    values = {}
    for name, fields in submodules.items():
        lines.append(f'[submodule "{name}"]')
        for key, value in fields.items():
            lines.append(f'\t{key} = {value}')
            values[f'submodule.{name}.{key}'] = value
    Path(root, '.gitmodules').write_text('\n'.join(lines) + '\n')
    return values


def git_sparse_submodule(args, cwd, check=True):
    """Run git-sparse-submodule as a command"""
    if isinstance(args, str):
        args = args.split()
    return subprocess.run(
        [sys.executable, str(SCRIPT)] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
    )


def git_config(key, cwd, file=None):
    """Get git config value"""
    cmd = ['git', 'config']
    if file:
        cmd.extend([f'--file={file}'])
    cmd.append(key)

    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=False)
    return result.stdout.strip() if result.returncode == 0 else None


# Assertion helpers
def assert_exists(path, should_exist=True):
    """Assert that a path exists or doesn't exist"""
    path = Path(path)
    if should_exist:
        assert path.exists(), f"Path '{path}' should exist but doesn't"
    else:
        assert not path.exists(), f"Path '{path}' should not exist but does"


def assert_output_matches(actual, expected, description=""):
    """Assert that output matches expected value"""
    assert actual == expected, f"{description}\nExpected: {expected}\nActual: {actual}"


def assert_output_contains(output, pattern, description=""):
    """Assert that output contains pattern"""
    assert pattern in output, (
        f"{description}\nPattern '{pattern}' not found in:\n{output}"
    )


def assert_output_like(output, pattern, description=""):
    """Assert that output matches regex pattern"""
    assert re.search(pattern, output), (
        f"{description}\nPattern '{pattern}' not found in:\n{output}"
    )
