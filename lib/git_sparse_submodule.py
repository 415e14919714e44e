#!/usr/bin/env python3
"""
git-sparse-submodule - Restore and back up sparse submodule checkouts

Keeps every submodule listed in .gitmodules in step with a custom
'sparse-checkout' property stored next to its path, url and branch.
"""

import sys
import os
import subprocess
import argparse
import re
import shutil
import textwrap
from typing import Optional, List
from dataclasses import dataclass, field

VERSION = "0.1.0"
REQUIRED_GIT_VERSION = "2.32.0"
PROG = 'git-sparse-submodule'
MANIFEST = '.gitmodules'
SPARSE_CHECKOUT_KEY = 'sparse-checkout'
DIRECTIONS = ['restore', 'backup']
SECTION_RE = re.compile(r'^\s*\[\s*submodule\s+"(.+)"\s*\]', re.MULTILINE)
C_ESCAPES = {
    'a': '\a',
    'b': '\b',
    'f': '\f',
    'n': '\n',
    'r': '\r',
    't': '\t',
    'v': '\v',
    '"': '"',
    '\\': '\\',
}


class GitSparseSubmoduleError(Exception):
    """Base exception for git-sparse-submodule errors"""

    def __init__(self, message, code=1):
        self.message = message
        self.code = code
        super().__init__(self.message)


class GitError(GitSparseSubmoduleError):
    """A git invocation exited with an unexpected status"""


class FilterPatternError(GitSparseSubmoduleError):
    """A sparse-checkout pattern that can't be stored in .gitmodules"""


@dataclass
class Flags:
    """Command-line flags"""

    quiet: bool = False
    verbose: bool = False
    debug: bool = False


# ===== Filter-List Codec =====


def encode_filters(patterns: List[str]) -> str:
    """Join sparse-checkout patterns into a single .gitmodules value.

    Patterns containing a space are wrapped in single quotes, all others
    are written as-is. Single quotes inside a pattern can't be
    represented, so such patterns are rejected.
    """
    tokens = []
    for pattern in patterns:
        if not pattern:
            raise FilterPatternError("Empty sparse-checkout pattern.")
        if "'" in pattern:
            raise FilterPatternError(
                f"Sparse-checkout pattern \"{pattern}\" contains a single quote, "
                f"which can't be stored in {MANIFEST}."
            )
        tokens.append(f"'{pattern}'" if ' ' in pattern else pattern)
    return ' '.join(tokens)


def decode_filters(token: Optional[str]) -> List[str]:
    """Split a .gitmodules value back into sparse-checkout patterns"""
    if not token:
        return []

    segments = []
    current = []
    quoted = False
    for char in token:
        if char == "'":
            quoted = not quoted
        elif char == ' ' and not quoted:
            segments.append(''.join(current))
            current = []
            continue
        current.append(char)
    segments.append(''.join(current))

    patterns = []
    for segment in segments:
        segment = segment.strip("'")
        if segment:
            patterns.append(segment)
    return patterns


def unquote_c_style(text: str) -> str:
    """Undo git's C-style quoting of a path, if it was quoted"""
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return text

    body = text[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        char = body[i]
        if char == '\\' and i + 1 < len(body):
            octal = body[i + 1 : i + 4]
            if re.fullmatch(r'[0-7]{3}', octal):
                out.append(int(octal, 8))
                i += 4
                continue
            escaped = body[i + 1]
            out.extend(C_ESCAPES.get(escaped, escaped).encode('utf-8'))
            i += 2
            continue
        out.extend(char.encode('utf-8'))
        i += 1
    return out.decode('utf-8', errors='replace')


# ===== Git Collaborator =====


class GitRunner:
    """Git command execution rooted at one repository"""

    def __init__(self, root=None, verbose=False, debug=False, quiet=False):
        self.root = root
        self.verbose = verbose or debug
        self.debug = debug
        self.quiet = quiet

    def run(
        self, args: List[str], capture=False, fail=True, ok_codes=(0,)
    ) -> Optional[str]:
        """Run git command in the repository root"""
        cmd = ['git'] + args
        if self.debug:
            self.log(f">>> {' '.join(cmd)}")

        try:
            if capture or self.quiet:
                result = subprocess.run(
                    cmd, cwd=self.root, capture_output=True, text=True, check=False
                )
            else:
                result = subprocess.run(cmd, cwd=self.root, check=False)
        except OSError as e:
            raise GitError(f"Command failed: '{' '.join(cmd)}'.\n{e}")

        if result.returncode not in ok_codes:
            if fail:
                detail = f"\n{result.stderr.strip()}" if result.stderr else ''
                raise GitError(f"Command failed: '{' '.join(cmd)}'.{detail}")
            return None
        return result.stdout if capture else None

    # Configuration

    def config_get(self, key: str, file: Optional[str] = None, default='') -> str:
        """Get a value from the active config or a config file"""
        args = ['config']
        if file:
            args.append(f'--file={file}')
        result = self.run(args + [key], capture=True, fail=False)
        if result is None:
            return default
        return result.strip()

    def config_set(self, key: str, value: str, file: Optional[str] = None):
        """Set a value in the active config or a config file"""
        args = ['config']
        if file:
            args.append(f'--file={file}')
        self.run(args + [key, value], capture=True)

    def config_unset(self, key: str, file: Optional[str] = None):
        """Remove a value; a key that isn't there is fine"""
        args = ['config']
        if file:
            args.append(f'--file={file}')
        # exit code 5: the key does not exist
        self.run(args + ['--unset', key], capture=True, ok_codes=(0, 5))

    def submodule_active(self, name: str) -> bool:
        """Check if a submodule takes part in 'git submodule update'"""
        active = self.config_get(f'submodule.{name}.active')
        if active:
            return active.lower() in ('true', 'yes', 'on', '1')
        return bool(self.config_get(f'submodule.{name}.url'))

    # Submodules

    def submodule_init(self, path: str):
        self.run(['submodule', 'init', '--', path])

    def clone(
        self,
        url: str,
        path: str,
        git_dir: str,
        branch: Optional[str] = None,
        sparse=False,
    ):
        """Blobless clone without checkout, storing the repo in git_dir"""
        args = [
            'clone',
            '--no-checkout',
            '--filter=blob:none',
            '--separate-git-dir',
            git_dir,
        ]
        if branch:
            args.extend(['--branch', branch])
        if sparse:
            args.append('--sparse')
        self.run(args + [url, path])

    def submodule_update(self, path: str, remote=False, rebase=False):
        args = ['submodule', 'update', '--force', '--no-fetch']
        if remote:
            args.append('--remote')
        if rebase:
            args.append('--rebase')
        self.run(args + ['--', path])

    # Sparse checkout

    def sparse_checkout_init(self, path: str):
        self.run(['-C', path, 'sparse-checkout', 'init', '--cone', '--sparse-index'])

    def sparse_checkout_add(self, path: str, pattern: str):
        self.run(['-C', path, 'sparse-checkout', 'add', pattern])

    def sparse_checkout_list(self, path: str) -> List[str]:
        """Get the sparse-checkout patterns of a working tree"""
        output = self.run(
            ['-c', 'core.quotePath=false', '-C', path, 'sparse-checkout', 'list'],
            capture=True,
        )
        return [unquote_c_style(line) for line in output.splitlines() if line]

    def sparse_checkout_enabled(self, path: str) -> bool:
        """Check if sparse checkout is turned on in a working tree"""
        value = self.run(
            ['-C', path, 'config', '--bool', 'core.sparseCheckout'],
            capture=True,
            fail=False,
        )
        return (value or '').strip() == 'true'

    # Repository

    def toplevel(self) -> str:
        return self.run(['rev-parse', '--show-toplevel'], capture=True).strip()

    def git_dir(self) -> str:
        """Absolute git dir of the current worktree, which holds modules/"""
        git_dir = self.run(['rev-parse', '--absolute-git-dir'], capture=True).strip()
        return os.path.normpath(git_dir)

    def version(self) -> str:
        output = self.run(['--version'], capture=True)
        match = re.search(r'(\d+\.\d+\.\d+)', output)
        if not match:
            raise GitSparseSubmoduleError("Can't determine git version")
        return match.group(1)

    def log(self, msg: str):
        """Print verbose/debug message"""
        if self.verbose:
            print(f"* {msg}")

    def say(self, msg: str):
        """Print message unless quiet"""
        if not self.quiet:
            print(msg)


# ===== Submodule Sync Engine =====


def normalize_path(path: str) -> str:
    """Normalize a .gitmodules path to git's slash-separated form"""
    path = path.replace('\\', '/')
    if path.startswith('./'):
        path = path[2:]
    path = re.sub(r'/+', '/', path)
    return path.rstrip('/')


def read_submodule_names(manifest: str) -> List[str]:
    """Find all submodule names in manifest order"""
    if not os.path.isfile(manifest):
        return []
    with open(manifest, 'r') as f:
        content = f.read()
    # dict keeps the first occurrence of a repeated section
    return list(dict.fromkeys(SECTION_RE.findall(content)))


@dataclass
class SubmoduleRecord:
    """Submodule configuration from .gitmodules"""

    name: str
    path: str = ''
    url: str = ''
    branch: str = ''
    sparse_checkout: List[str] = field(default_factory=list)
    active: bool = False

    @classmethod
    def from_manifest(cls, name: str, git_runner, manifest=MANIFEST):
        """Read one submodule section of the manifest"""

        def get(key):
            return git_runner.config_get(f'submodule.{name}.{key}', file=manifest)

        record = cls(name)
        record.path = normalize_path(get('path'))
        record.url = get('url')
        record.branch = get('branch')
        record.sparse_checkout = decode_filters(get(SPARSE_CHECKOUT_KEY))
        record.active = git_runner.submodule_active(name)
        return record


class SubmoduleSync:
    """Brings one submodule in line with .gitmodules, or the other way round"""

    def __init__(self, git_runner, git_dir: str, manifest=MANIFEST):
        self.git = git_runner
        self.modules_dir = os.path.join(git_dir, 'modules')
        self.manifest = manifest

    def metadata_dir(self, name: str) -> str:
        """Where git keeps the repository of submodule 'name'"""
        return os.path.join(self.modules_dir, os.path.normpath(name))

    def restore(self, record: SubmoduleRecord) -> bool:
        """Init, clone, sparse-checkout and update as needed.

        Returns False if the submodule was skipped.
        """
        if not record.path:
            self.git.log(f"Submodule '{record.name}' has no path; skipping.")
            return False

        git_dir = self.metadata_dir(record.name)
        if os.path.isdir(git_dir):
            self.git.log(f"Submodule '{record.name}' already initialized.")
        else:
            self.git.submodule_init(record.path)
            try:
                os.makedirs(os.path.dirname(git_dir), exist_ok=True)
            except OSError as e:
                raise GitSparseSubmoduleError(
                    f"Can't create '{os.path.dirname(git_dir)}': {e.strerror}"
                )

            # .gitmodules isn't necessarily what 'submodule init' registered
            url = self.git.config_get(f'submodule.{record.name}.url')
            if not url:
                raise GitSparseSubmoduleError(
                    f"No url configured for submodule '{record.name}'."
                )
            self.git.clone(
                url,
                record.path,
                git_dir,
                branch=record.branch or None,
                sparse=bool(record.sparse_checkout),
            )
            record.active = self.git.submodule_active(record.name)
            branch = f" ({record.branch})" if record.branch else ''
            self.git.say(f"Cloned '{url}'{branch} into '{record.path}'.")

        if record.sparse_checkout:
            self.git.sparse_checkout_init(record.path)
            for pattern in record.sparse_checkout:
                self.git.sparse_checkout_add(record.path, pattern)
            self.git.say(
                f"Applied {len(record.sparse_checkout)} sparse-checkout "
                f"pattern(s) to '{record.path}'."
            )

        if record.active:
            self.git.submodule_update(record.path, remote=True, rebase=False)
            self.git.say(f"Updated '{record.path}'.")
        else:
            self.git.log(f"Submodule '{record.name}' is not active; not updating.")
        return True

    def backup(self, record: SubmoduleRecord) -> bool:
        """Write the live sparse-checkout patterns to .gitmodules.

        Returns False if the submodule was skipped.
        """
        if not record.path:
            self.git.log(f"Submodule '{record.name}' has no path; skipping.")
            return False

        git_dir = self.metadata_dir(record.name)
        if not os.path.isdir(git_dir):
            self.git.log(f"Submodule '{record.name}' is not cloned; skipping.")
            return False

        key = f'submodule.{record.name}.{SPARSE_CHECKOUT_KEY}'
        sparse_file = os.path.join(git_dir, 'info', 'sparse-checkout')
        # 'sparse-checkout disable' keeps the file but turns the setting off
        if not os.path.isfile(sparse_file) or not self.git.sparse_checkout_enabled(
            record.path
        ):
            self.git.config_unset(key, file=self.manifest)
            record.sparse_checkout = []
            self.git.say(f"Sparse checkout not enabled for '{record.name}'.")
            return True

        patterns = self.git.sparse_checkout_list(record.path)
        token = encode_filters(patterns)
        self.git.config_set(key, token, file=self.manifest)
        record.sparse_checkout = patterns
        self.git.say(f"Saved sparse-checkout patterns for '{record.name}': {token}")
        return True


# ===== Command Dispatcher =====


class GitSparseSubmodule:
    """Main git-sparse-submodule implementation"""

    def __init__(self, git_runner=None):
        self.direction = 'restore'
        self.names = []
        self.flags = Flags()
        self.git = git_runner or GitRunner()
        self.git_version = None

    def main(self, args):
        """Main entry point"""
        for env_var, flag_attr in [
            ('GIT_SPARSE_SUBMODULE_QUIET', 'quiet'),
            ('GIT_SPARSE_SUBMODULE_VERBOSE', 'verbose'),
            ('GIT_SPARSE_SUBMODULE_DEBUG', 'debug'),
        ]:
            if os.getenv(env_var):
                setattr(self.flags, flag_attr, True)

        self.parse_args(args)
        self.check_environment()
        self.check_repository()

        failed = self.sync_all()
        if failed:
            self.error(
                f"Failed to {self.direction} {len(failed)} submodule(s): "
                f"{', '.join(failed)}"
            )

    def parse_args(self, args):
        """Parse command line arguments"""
        parser = self._create_parser()
        try:
            parsed = parser.parse_args(args)
        except argparse.ArgumentError as e:
            msg = str(e.message) if hasattr(e, 'message') else str(e)
            if 'unrecognized arguments:' in msg:
                arg = msg.split('unrecognized arguments:')[1].strip()
                msg = f"error: unknown option `{arg.lstrip('-')}"
            self.usage_error(msg)

        if parsed.help_flag:
            self.print_help()
            sys.exit(0)

        if parsed.version:
            print(VERSION)
            sys.exit(0)

        for flag in ['quiet', 'verbose', 'debug']:
            if getattr(parsed, flag):
                setattr(self.flags, flag, True)

        self.git.verbose = self.flags.verbose or self.flags.debug
        self.git.debug = self.flags.debug
        self.git.quiet = self.flags.quiet

        self.direction = parsed.direction or 'restore'
        if self.direction not in DIRECTIONS:
            self.usage_error(
                f"'{self.direction}' is not a direction. Use 'restore' or 'backup'."
            )
        self.names = parsed.names or []

    def _create_parser(self):
        """Create argument parser"""

        class CustomArgumentParser(argparse.ArgumentParser):
            def error(self, message):
                raise argparse.ArgumentError(None, message)

        parser = CustomArgumentParser(prog='git sparse-submodule', add_help=False)
        parser.add_argument('-h', '--help', action='store_true', dest='help_flag')
        parser.add_argument('--version', action='store_true')
        parser.add_argument('-q', '--quiet', action='store_true')
        parser.add_argument('-v', '--verbose', action='store_true')
        parser.add_argument('-d', '--debug', action='store_true')
        parser.add_argument('direction', nargs='?')
        parser.add_argument('names', nargs='*')
        return parser

    def print_help(self):
        print(
            textwrap.dedent(f"""
            git sparse-submodule - Sparse checkouts for git submodules

            Usage: git sparse-submodule [options] [restore|backup] [<name>...]

            Directions:
              restore   Clone missing submodules and apply the sparse-checkout
                        patterns stored in {MANIFEST} (default)
              backup    Store each submodule's sparse-checkout patterns in
                        {MANIFEST}

            Options:
              -q, --quiet     Only print errors
              -v, --verbose   Explain what is being done
              -d, --debug     Show the git commands being run
              --version       Print the version and exit
            """)
        )

    def sync_all(self) -> List[str]:
        """Run the selected direction for each submodule.

        Returns the names of the submodules that failed.
        """
        manifest = os.path.join(self.git.root, MANIFEST)
        names = read_submodule_names(manifest)
        if not names:
            self.git.say(f"No submodules found in {MANIFEST}.")
            return []

        unknown = [name for name in self.names if name not in names]
        if unknown:
            self.usage_error(f"No submodule named '{unknown[0]}' in {MANIFEST}.")
        if self.names:
            names = [name for name in names if name in self.names]

        engine = SubmoduleSync(self.git, self.git.git_dir())
        action = engine.restore if self.direction == 'restore' else engine.backup

        done, skipped, failed = 0, 0, []
        for name in names:
            try:
                record = SubmoduleRecord.from_manifest(name, self.git)
                if action(record):
                    done += 1
                else:
                    skipped += 1
            except GitSparseSubmoduleError as e:
                print(f"{PROG}: {e.message}", file=sys.stderr)
                failed.append(name)

        past = 'Restored' if self.direction == 'restore' else 'Backed up'
        self.git.say(f"{past} {done} submodule(s), skipped {skipped}.")
        return failed

    # ===== Checks and Validations =====

    def check_environment(self):
        """Check that environment is suitable"""
        if not shutil.which('git'):
            self.error("Can't find your 'git' command in '$PATH'.")

        try:
            self.git_version = self.git.version()
        except GitSparseSubmoduleError as e:
            self.error(e.message)

        if not self.check_version(self.git_version, REQUIRED_GIT_VERSION):
            self.error(
                f"Requires git version {REQUIRED_GIT_VERSION} or higher; "
                f"you have '{self.git_version}'."
            )

    def check_repository(self):
        """Locate the top level of the current work tree"""
        try:
            self.git.root = self.git.toplevel()
        except GitError:
            self.error("Not inside a git working tree.")
        self.git.log(f"Repository root: {self.git.root}")

    def check_version(self, got: str, want: str) -> bool:
        """Check version is sufficient"""
        got_parts = got.split('.')
        want_parts = want.split('.')

        while len(got_parts) < 3:
            got_parts.append('0')
        while len(want_parts) < 3:
            want_parts.append('0')

        got_nums = [int(p) for p in got_parts[:3]]
        want_nums = [int(p) for p in want_parts[:3]]
        return got_nums >= want_nums

    def error(self, msg: str):
        """Print error and exit"""
        print(f"{PROG}: {msg}", file=sys.stderr)
        raise GitSparseSubmoduleError(msg)

    def usage_error(self, msg: str):
        """Print usage error and exit"""
        print(f"{PROG}: {msg}", file=sys.stderr)
        sys.exit(1)


def main():
    """Main entry point"""
    try:
        app = GitSparseSubmodule()
        app.main(sys.argv[1:])
    except GitSparseSubmoduleError as e:
        sys.exit(e.code)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
