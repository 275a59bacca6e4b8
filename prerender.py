#!/usr/bin/env python3
"""
Build-time math prerenderer for a Hugo site.

Walks the ``katex/`` source tree, renders every ``!LATEX ... !LATEX!`` span once,
stores the rendering as a partial named by its content hash, and writes the
rewritten page into ``content/`` with a shortcode in place of the math.
"""

import os
import re
import sys
import shlex
import shutil
import hashlib
import argparse
import subprocess
from enum import Enum
from pathlib import Path, PurePath
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import latex2mathml.converter


START_MARKER = '!LATEX'
END_MARKER = '!LATEX!'
INLINE_FLAG = '~'

DEFAULT_SOURCE_DIR = 'katex'
DEFAULT_DESTINATION_ROOT = 'content'
DEFAULT_OUTPUT_DIR = 'layouts/partials/rendered-latex'
DEFAULT_HASH_ALGORITHM = 'sha256'

WEAK_HASH_ALGORITHMS = {'md4', 'md5', 'md5-sha1', 'mdc2'}

UNTERMINATED_ERROR = 'error'
UNTERMINATED_WARN = 'warn'


class PrerenderError(Exception):
    """Base class for errors reported to the user."""


class ConfigurationError(PrerenderError):
    """Invalid option or missing external tool."""


class RenderError(PrerenderError):
    """The renderer rejected a math expression."""

    def __init__(self, message: str, expression: str = None, source: PurePath = None):
        self.message = message
        self.expression = expression
        self.source = source
        super().__init__(self._format())

    def _format(self) -> str:
        text = self.message
        if self.expression is not None:
            text = f'{text}\n  expression: {self.expression!r}'
        if self.source is not None:
            text = f'{text}\n  file: {self.source}'
        return text

    def with_context(self, expression: str, source: Optional[PurePath]) -> 'RenderError':
        """Return a copy carrying the offending expression and file."""
        return RenderError(
            self.message,
            expression=self.expression if self.expression is not None else expression,
            source=self.source if self.source is not None else source,
        )


class UnterminatedSpanError(PrerenderError):
    """A start marker has no matching end marker."""

    def __init__(self, path: PurePath, line: int, column: int):
        self.path = path
        self.line = line
        self.column = column
        super().__init__(
            f'{path}:{line}:{column}: {START_MARKER} has no closing {END_MARKER}'
        )


class MathMode(Enum):
    INLINE = 'inline'
    BLOCK = 'block'

    @property
    def suffix(self) -> str:
        return self.value

    @property
    def display_mode(self) -> bool:
        return self is MathMode.BLOCK


class MathSpan(NamedTuple):
    mode: MathMode
    expression: str


class Hasher:
    """Content-addressing digest, fixed to one algorithm for the whole run."""

    def __init__(self, algorithm: str = DEFAULT_HASH_ALGORITHM):
        algorithm = algorithm.lower()
        if algorithm not in hashlib.algorithms_available:
            raise ConfigurationError(f'Unknown hash algorithm: {algorithm}')
        if algorithm.startswith('shake_'):
            raise ConfigurationError(f'Variable-length hash not supported: {algorithm}')
        if algorithm in WEAK_HASH_ALGORITHMS:
            raise ConfigurationError(f'Hash algorithm too weak for content addressing: {algorithm}')
        self.algorithm = algorithm

    def hash(self, text: str) -> str:
        """Hex digest of the UTF-8 encoding of text."""
        return hashlib.new(self.algorithm, text.encode('utf-8')).hexdigest()


class MarkerExtractor:
    """Finds ``!LATEX`` spans in page text."""

    # Leading whitespace after the start marker is dropped; an inline flag
    # needs at least one whitespace character after it. Block bodies are
    # trimmed too, unlike the Node version which hashed " F=ma" with its space.
    PATTERN = re.compile(
        re.escape(START_MARKER)
        + r'(?:(?P<inline>' + re.escape(INLINE_FLAG) + r'\s+)|\s*)'
        + r'(?P<expression>.+?)'
        + re.escape(END_MARKER),
        re.DOTALL,
    )

    def _span(self, match) -> MathSpan:
        mode = MathMode.INLINE if match.group('inline') else MathMode.BLOCK
        return MathSpan(mode, match.group('expression'))

    def extract(self, text: str) -> List[MathSpan]:
        """Return all spans in order of appearance."""
        return [self._span(match) for match in self.PATTERN.finditer(text)]

    def rewrite(self, text: str, replacer: Callable[[MathSpan], str]) -> str:
        """Replace every span with replacer(span)."""
        return self.PATTERN.sub(lambda match: replacer(self._span(match)), text)

    def find_unterminated(self, text: str) -> Optional[int]:
        """Offset of the first start marker outside a complete span, or None."""
        position = 0
        for match in self.PATTERN.finditer(text):
            stray = text.find(START_MARKER, position, match.start())
            if stray != -1:
                return stray
            position = match.end()
        stray = text.find(START_MARKER, position)
        return stray if stray != -1 else None


class KatexCliRenderer:
    """Renders through the KaTeX command line tool (``npm install -g katex``)."""

    ERROR_PATTERN = re.compile(r'KaTeX parse error: (.+)')

    def __init__(self, command: str = 'katex', timeout: float = 30):
        self.command = shlex.split(command)
        self.timeout = timeout

    def __call__(self, expression: str, display_mode: bool) -> str:
        args = list(self.command)
        if display_mode:
            args.append('--display-mode')
        try:
            result = subprocess.run(
                args,
                input=expression,
                capture_output=True,
                text=True,
                encoding='utf-8',
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise ConfigurationError(
                f'KaTeX CLI not found ({self.command[0]}). Install with: npm install -g katex'
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderError(f'KaTeX timed out after {self.timeout}s', expression=expression) from exc

        if result.returncode != 0:
            match = self.ERROR_PATTERN.search(result.stderr)
            message = match.group(1).strip() if match else (result.stderr.strip() or 'Unknown error')
            raise RenderError(f'KaTeX parse error: {message}', expression=expression)

        return result.stdout.strip()


class MathMLRenderer:
    """Pure Python fallback producing MathML with latex2mathml."""

    def __call__(self, expression: str, display_mode: bool) -> str:
        display = 'block' if display_mode else 'inline'
        try:
            return latex2mathml.converter.convert(expression, display=display)
        except Exception as exc:
            raise RenderError(f'latex2mathml: {exc}', expression=expression) from exc


RENDERERS = {
    'katex': KatexCliRenderer,
    'mathml': MathMLRenderer,
}


def get_renderer(name: str, katex_command: str = 'katex', katex_timeout: float = 30) -> Callable[[str, bool], str]:
    """Build a renderer by name."""
    if name == 'katex':
        return KatexCliRenderer(katex_command, timeout=katex_timeout)
    if name in RENDERERS:
        return RENDERERS[name]()
    raise ConfigurationError(f'Unknown renderer: {name} (choose from {", ".join(sorted(RENDERERS))})')


def escape_rendered(rendered: str) -> str:
    """Hide braces from Hugo's template engine."""
    return rendered.replace('{', '&#123;').replace('}', '&#125;')


class RenderCache:
    """Renders each (hash, mode) pair at most once and stores it as a partial."""

    def __init__(self, renderer: Callable[[str, bool], str], hasher: Hasher, output_dir: Path,
                 reuse_existing: bool = True, verbose: bool = True):
        self.renderer = renderer
        self.hasher = hasher
        self.output_dir = Path(output_dir)
        self.reuse_existing = reuse_existing
        self.verbose = verbose
        self.entries: Dict[Tuple[str, MathMode], str] = {}
        self.rendered = 0
        self.reused = 0
        self.deduplicated = 0

    def artifact_path(self, latex_hash: str, mode: MathMode) -> Path:
        return self.output_dir / f'{latex_hash}-{mode.suffix}.html'

    def reset(self):
        """Forget everything seen so far; called at the start of each run."""
        self.entries.clear()
        self.rendered = 0
        self.reused = 0
        self.deduplicated = 0

    def __contains__(self, key: Tuple[str, MathMode]) -> bool:
        return key in self.entries

    def ensure_rendered(self, mode: MathMode, expression: str, source: PurePath = None) -> Path:
        """Make sure the partial for expression exists; return its path."""
        latex_hash = self.hasher.hash(expression)
        key = (latex_hash, mode)
        output_path = self.artifact_path(latex_hash, mode)

        if key in self.entries:
            self.deduplicated += 1
            return output_path

        if self.reuse_existing and output_path.is_file():
            self.entries[key] = output_path.read_bytes().decode('utf-8')
            self.reused += 1
            return output_path

        try:
            rendered = self.renderer(expression, mode.display_mode)
        except RenderError as exc:
            raise exc.with_context(expression, source) from exc

        rendered = escape_rendered(rendered)
        self.entries[key] = rendered
        output_path.write_bytes(rendered.encode('utf-8'))
        self.rendered += 1
        if self.verbose:
            print(f'Rendered {output_path.name}')
        return output_path


class PathRelocator:
    """Maps ``.../katex/<rest>`` onto ``content/<rest>``."""

    def __init__(self, source_root_name: str = DEFAULT_SOURCE_DIR,
                 destination_root: str = DEFAULT_DESTINATION_ROOT):
        self.source_root_name = source_root_name
        self.destination_root = destination_root

    def relocate(self, path: PurePath) -> PurePath:
        """Rebase path below the nearest marker ancestor, or return it unchanged."""
        if path.anchor:
            return path

        accumulated = []
        current = path
        while current.parent != current:
            accumulated.append(current.name)
            current = current.parent
            if current.name == self.source_root_name:
                return type(path)(self.destination_root, *reversed(accumulated))

        return path


def reference_token(latex_hash: str, mode: MathMode) -> str:
    """Hugo shortcode that includes the rendered partial."""
    return f'{{{{< katex-{mode.suffix} "{latex_hash}" >}}}}'


class FileTransformer:
    """Rewrites one source page and renders its math."""

    def __init__(self, site_dir: Path, extractor: MarkerExtractor, relocator: PathRelocator,
                 cache: RenderCache, unterminated: str = UNTERMINATED_ERROR, verbose: bool = True):
        if unterminated not in (UNTERMINATED_ERROR, UNTERMINATED_WARN):
            raise ConfigurationError(f'Unknown unterminated-span policy: {unterminated}')
        self.site_dir = Path(site_dir)
        self.extractor = extractor
        self.relocator = relocator
        self.cache = cache
        self.unterminated = unterminated
        self.verbose = verbose

    def _replace(self, span: MathSpan) -> str:
        return reference_token(self.cache.hasher.hash(span.expression), span.mode)

    def _check_unterminated(self, content: str, path: PurePath):
        offset = self.extractor.find_unterminated(content)
        if offset is None:
            return
        line = content.count('\n', 0, offset) + 1
        column = offset - (content.rfind('\n', 0, offset) + 1) + 1
        error = UnterminatedSpanError(path, line, column)
        if self.unterminated == UNTERMINATED_ERROR:
            raise error
        print(f'Warning: {error}; left as plain text', file=sys.stderr)

    def transform(self, path: PurePath) -> int:
        """Transform the page at path (relative to the site dir); return its span count."""
        # Bytes in and out so line endings survive and expressions hash exactly.
        raw = (self.site_dir / path).read_bytes()
        output_path = self.relocator.relocate(path)
        destination = self.site_dir / output_path

        try:
            content = raw.decode('utf-8')
        except UnicodeDecodeError:
            # Page bundle resources (images, PDFs) are copied as they are.
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(raw)
            if self.verbose:
                print(f'Copied {path} -> {output_path}')
            return 0

        spans = self.extractor.extract(content)
        self._check_unterminated(content, path)
        rewritten = self.extractor.rewrite(content, self._replace)

        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(rewritten.encode('utf-8'))

        for span in spans:
            self.cache.ensure_rendered(span.mode, span.expression, source=path)

        if self.verbose:
            print(f'Processed {path} -> {output_path} ({len(spans)} expressions)')
        return len(spans)


class TreeWalker:
    """Depth-first walk that feeds every regular file to the transformer."""

    def __init__(self, transformer: FileTransformer):
        self.transformer = transformer
        self.files = 0
        self.spans = 0

    def _children(self, directory: PurePath) -> List[Tuple[PurePath, os.DirEntry]]:
        with os.scandir(self.transformer.site_dir / directory) as entries:
            children = sorted(entries, key=lambda entry: entry.name)
        return [(directory / entry.name, entry) for entry in children]

    def walk(self, root: PurePath) -> int:
        """Transform every file below root; return the number of files."""
        stack = list(reversed(self._children(root)))
        while stack:
            path, entry = stack.pop()
            if entry.is_dir(follow_symlinks=False):
                stack.extend(reversed(self._children(path)))
            elif entry.is_file(follow_symlinks=False):
                self.spans += self.transformer.transform(path)
                self.files += 1
        return self.files


class Prerenderer:
    """Owns the configuration and the per-run render cache."""

    def __init__(self, site_dir: Path = None, source_dir: str = DEFAULT_SOURCE_DIR,
                 destination_root: str = DEFAULT_DESTINATION_ROOT,
                 output_dir: str = DEFAULT_OUTPUT_DIR,
                 renderer: Callable[[str, bool], str] = None,
                 hash_algorithm: str = DEFAULT_HASH_ALGORITHM,
                 unterminated: str = UNTERMINATED_ERROR,
                 reuse_existing: bool = True, verbose: bool = True):
        self.site_dir = Path(site_dir) if site_dir is not None else Path('.')
        self.source_dir = PurePath(source_dir)
        if self.source_dir.anchor or not self.source_dir.name:
            raise ConfigurationError(f'Source directory must be a named path relative to the site root: {source_dir}')
        self.output_dir = self.site_dir / output_dir
        self.verbose = verbose

        self.hasher = Hasher(hash_algorithm)
        self.cache = RenderCache(
            renderer if renderer is not None else KatexCliRenderer(),
            self.hasher,
            self.output_dir,
            reuse_existing=reuse_existing,
            verbose=verbose,
        )
        self.transformer = FileTransformer(
            self.site_dir,
            MarkerExtractor(),
            PathRelocator(self.source_dir.name, destination_root),
            self.cache,
            unterminated=unterminated,
            verbose=verbose,
        )

    def clear_cache(self):
        """Remove all rendered partials."""
        if self.output_dir.exists():
            shutil.rmtree(self.output_dir)
        self.cache.reset()
        if self.verbose:
            print('Cache cleared')

    def run(self) -> Dict[str, int]:
        """Prerender the whole source tree."""
        if not (self.site_dir / self.source_dir).is_dir():
            raise ConfigurationError(f'{self.site_dir / self.source_dir} is not a directory')

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.cache.reset()

        walker = TreeWalker(self.transformer)
        walker.walk(self.source_dir)

        stats = {
            'files': walker.files,
            'spans': walker.spans,
            'rendered': self.cache.rendered,
            'reused': self.cache.reused,
            'deduplicated': self.cache.deduplicated,
        }
        if self.verbose:
            print(f"\nPrerender complete! {stats['files']} files, {stats['spans']} expressions "
                  f"({stats['rendered']} rendered, {stats['reused']} reused, "
                  f"{stats['deduplicated']} duplicates) in {self.output_dir}")
        return stats


def main(argv: List[str] = None):
    parser = argparse.ArgumentParser(description='Prerender !LATEX math in a Hugo site with KaTeX')
    parser.add_argument('-C', '--site-dir', default='.', help='Site root (default: current directory)')
    parser.add_argument('--source', default=DEFAULT_SOURCE_DIR, help='Source tree, relative to the site root')
    parser.add_argument('--destination', default=DEFAULT_DESTINATION_ROOT,
                        help='Directory that receives rewritten pages')
    parser.add_argument('--output', default=DEFAULT_OUTPUT_DIR, help='Directory for rendered partials')
    parser.add_argument('--hash-algorithm', default=DEFAULT_HASH_ALGORITHM, help='hashlib algorithm name')
    parser.add_argument('--renderer', default='katex', choices=sorted(RENDERERS), help='Math renderer')
    parser.add_argument('--katex-command', default='katex', help='KaTeX CLI command line')
    parser.add_argument('--katex-timeout', type=float, default=30, help='Seconds to wait for one KaTeX render')
    parser.add_argument('--allow-unterminated', action='store_true',
                        help='Warn about unterminated spans instead of failing')
    parser.add_argument('--force', action='store_true', help='Re-render partials that already exist')
    parser.add_argument('--clear-cache', action='store_true', help='Delete rendered partials before running')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only print warnings and errors')

    args = parser.parse_args(argv)

    try:
        prerenderer = Prerenderer(
            site_dir=Path(args.site_dir),
            source_dir=args.source,
            destination_root=args.destination,
            output_dir=args.output,
            renderer=get_renderer(args.renderer, args.katex_command, args.katex_timeout),
            hash_algorithm=args.hash_algorithm,
            unterminated=UNTERMINATED_WARN if args.allow_unterminated else UNTERMINATED_ERROR,
            reuse_existing=not args.force,
            verbose=not args.quiet,
        )
        if args.clear_cache:
            prerenderer.clear_cache()
        prerenderer.run()
    except PrerenderError as exc:
        print(f'Error: {exc}', file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
