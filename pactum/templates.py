"""Template resolution and static variable extraction.

A template source is one of:
- a local path (relative paths resolve against the contract's directory),
- a plain ``http://`` / ``https://`` URL,
- a repository location (see :mod:`pactum.location`) with ``git`` in its
  protocol stack.

Remote and repository sources go through the content cache keyed by the
source string exactly as written in the contract. A pinned content hash is
checked on every load, cached or not, and a mismatch fails closed.
"""

from __future__ import annotations

import logging
import mimetypes
import pathlib
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

from pactum.cache import ContentCache
from pactum.core import resolve_against
from pactum.errors import (
    CacheCorruptionError,
    MalformedLocationError,
    TemplateError,
    TemplateNotFoundError,
)
from pactum.integrity import content_hash, verify_content_hash
from pactum.location import is_location, is_web_url, parse
from pactum.repository import GitRunner, RepositoryFetcher

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_USER_AGENT = "pactum/0.1"
DEFAULT_MUSTACHE_DELIMITERS = ("{{", "}}")

CONTENT_TYPE_EXTENSIONS = {
    "text/markdown": ".md",
    "text/x-markdown": ".md",
    "text/html": ".html",
    "text/plain": ".txt",
    "text/x-handlebars-template": ".hbs",
    "text/x-mustache": ".mustache",
    "application/json": ".json",
}


class TemplateFormat(Enum):
    MUSTACHE = "mustache"
    HANDLEBARS = "handlebars"

    @classmethod
    def from_extension(cls, ext: str) -> "TemplateFormat":
        if ext.lower() in (".hbs", ".handlebars"):
            return cls.HANDLEBARS
        return cls.MUSTACHE

    @classmethod
    def parse(cls, value: Union[str, "TemplateFormat"]) -> "TemplateFormat":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise TemplateError(f"unsupported template format: {value!r}") from None


@dataclass(frozen=True)
class Template:
    source: str
    raw: bytes
    content_hash: str
    extension: str
    format: TemplateFormat
    delimiters: Optional[Tuple[str, str]] = None

    @property
    def content(self) -> str:
        try:
            return self.raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TemplateError(f"template {self.source!r} is not valid UTF-8 text: {e}") from e

    def variables(self) -> Dict[str, Any]:
        return extract_variables(self.content, self.format, self.delimiters)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "source": self.source,
            "format": self.format.value,
            "hash": self.content_hash,
            "extension": self.extension,
        }
        if self.delimiters:
            d["delimiters"] = list(self.delimiters)
        return d


@dataclass
class LoadOptions:
    """How to load a template.

    ``refresh`` skips the cache lookup (the fetched content still overwrites
    the cache entry); ``use_cache=False`` neither reads nor writes the cache.
    """
    expected_content_hash: Optional[str] = None
    format: Optional[TemplateFormat] = None
    delimiters: Optional[Tuple[str, str]] = None
    base_dir: Optional[pathlib.Path] = None
    use_cache: bool = True
    refresh: bool = False


class TemplateResolver:
    def __init__(
        self,
        cache: ContentCache,
        fetcher: RepositoryFetcher,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.http_timeout = http_timeout
        self.user_agent = user_agent

    @classmethod
    def from_config(cls, config: Any) -> "TemplateResolver":
        """Build a resolver rooted in the configured profile directory."""
        return cls(
            cache=ContentCache(config.templates_cache_dir),
            fetcher=RepositoryFetcher(
                config.mirrors_dir,
                runner=GitRunner(config.tools.git.get()),
                default_branch=config.repository.default_branch.get(),
            ),
            http_timeout=config.http.timeout_seconds.get(),
            user_agent=config.http.user_agent.get(),
        )

    def load(self, source: str, options: Optional[LoadOptions] = None) -> Template:
        options = options or LoadOptions()
        if not is_location(source):
            template = self._load_local(source, options)
            self._check(template, options)
            return template

        if options.use_cache and not options.refresh:
            cached = self._load_cached(source, options)
            if cached is not None:
                self._check(cached, options)
                return cached

        if is_web_url(source):
            data, ext = self._fetch_web(source)
        else:
            location = parse(source)
            if not location.is_repository:
                raise MalformedLocationError(
                    f"unsupported protocol stack {'+'.join(location.protocol_stack)!r} in {source!r}"
                )
            data, path = self.fetcher.fetch(location)
            ext = path.suffix

        template = self._build(source, data, ext, options)
        self._check(template, options)
        if options.use_cache:
            self.cache.add(source, data, format=template.format.value, extension=ext)
        return template

    def _build(self, source: str, data: bytes, ext: str, options: LoadOptions, fmt: Optional[str] = None) -> Template:
        if options.format is not None:
            tf = TemplateFormat.parse(options.format)
        elif fmt:
            tf = TemplateFormat.parse(fmt)
        else:
            tf = TemplateFormat.from_extension(ext)
        return Template(
            source=source,
            raw=data,
            content_hash=content_hash(data),
            extension=ext,
            format=tf,
            delimiters=tuple(options.delimiters) if options.delimiters else None,
        )

    @staticmethod
    def _check(template: Template, options: LoadOptions) -> None:
        if options.expected_content_hash:
            verify_content_hash(template.raw, options.expected_content_hash, template.source)

    def _load_local(self, source: str, options: LoadOptions) -> Template:
        path = resolve_against(options.base_dir or pathlib.Path.cwd(), source)
        if not path.is_file():
            raise TemplateNotFoundError(f"template file not found: {path}")
        logger.debug(f"Loading local template {path}")
        return self._build(source, path.read_bytes(), path.suffix, options)

    def _load_cached(self, source: str, options: LoadOptions) -> Optional[Template]:
        meta = self.cache.get_meta(source)
        if meta is None:
            logger.debug(f"Cache miss for {source}")
            return None
        data = self.cache.get_bytes(source)
        if data is None or content_hash(data) != meta.content_hash:
            raise CacheCorruptionError(f"cached content for {source!r} does not match its index hash")
        logger.debug(f"Cache hit for {source} ({meta.cache_filename})")
        return self._build(source, data, meta.extension or "", options, fmt=meta.format)

    def _fetch_web(self, url: str) -> Tuple[bytes, str]:
        logger.info(f"Fetching {url}")
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(req, timeout=self.http_timeout) as resp:
                data = resp.read()
                ct = resp.headers.get("Content-Type") or ""
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise TemplateNotFoundError(f"template not found at {url} (HTTP 404)") from exc
            raise TemplateError(f"failed to fetch {url}: HTTP {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise TemplateError(f"failed to fetch {url}: {exc.reason}") from exc
        return data, extension_for(ct, url)


def extension_for(content_type: str, url: str) -> str:
    """File extension from a Content-Type header, else from the URL path."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type:
        ext = CONTENT_TYPE_EXTENSIONS.get(media_type) or mimetypes.guess_extension(media_type)
        if ext:
            return ext
    ext = pathlib.PurePosixPath(urllib.parse.urlsplit(url).path).suffix
    logger.warning(f"Unrecognised content type {media_type or '(none)'} for {url}; using extension {ext or '(none)'}")
    return ext


# ---------------------------------------------------------------------------
# Variable extraction
#
# Tags are tokenized into a section tree, then the tree is walked to build a
# nested mapping of variable names: {"party": {"name": {}}}.
# ---------------------------------------------------------------------------


@dataclass
class _Ref:
    path: str


@dataclass
class _Section:
    """A block. ``path`` is set when the body is scoped under a variable."""
    opener: str
    path: Optional[str] = None
    locals: Set[str] = field(default_factory=set)
    children: List[Union["_Ref", "_Section"]] = field(default_factory=list)


_HBS_TAG = re.compile(r"(?<!\\)\{\{(~?)(!--.*?--|\{.*?\}|[^}]*?)(~?)\}\}", re.S)
_HBS_ARG = re.compile(r'"[^"]*"|\'[^\']*\'|\(|\)|[^\s()]+')
_HBS_LITERALS = {"true", "false", "null", "undefined", "else"}
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def extract_variables(
    text: str,
    fmt: TemplateFormat = TemplateFormat.MUSTACHE,
    delimiters: Optional[Tuple[str, str]] = None,
) -> Dict[str, Any]:
    if fmt is TemplateFormat.HANDLEBARS:
        root = _handlebars_tree(text)
        separators = r"[./]"
    else:
        root = _mustache_tree(text, delimiters or DEFAULT_MUSTACHE_DELIMITERS)
        separators = r"\."
    result: Dict[str, Any] = {}
    _walk(root, [result], set(), separators)
    return result


def _mustache_tags(text: str, delimiters: Tuple[str, str]) -> Iterator[Tuple[str, str]]:
    otag, ctag = delimiters
    pos = 0
    while True:
        start = text.find(otag, pos)
        if start < 0:
            return
        inner = start + len(otag)
        if otag == "{{" and text.startswith("{", inner):
            end = text.find("}" + ctag, inner)
            if end < 0:
                raise TemplateError(f"unclosed tag at offset {start}")
            yield "&", text[inner + 1:end].strip()
            pos = end + 1 + len(ctag)
            continue
        end = text.find(ctag, inner)
        if end < 0:
            raise TemplateError(f"unclosed tag at offset {start}")
        body = text[inner:end].strip()
        pos = end + len(ctag)
        if body.startswith("="):
            parts = body.strip("=").split()
            if not body.endswith("=") or len(parts) != 2:
                raise TemplateError(f"invalid delimiter change {body!r} at offset {start}")
            otag, ctag = parts
            continue
        if body and body[0] in "#^/!>&{":
            name = body[1:].strip()
            if body[0] == "{":
                name = name.rstrip("}").strip()
            yield body[0], name
        elif body:
            yield "name", body


def _mustache_tree(text: str, delimiters: Tuple[str, str]) -> _Section:
    root = _Section(opener="")
    stack = [root]
    for kind, name in _mustache_tags(text, delimiters):
        current = stack[-1]
        if kind in ("name", "&", "{"):
            current.children.append(_Ref(name))
        elif kind == "#":
            section = _Section(opener=name, path=name)
            current.children.append(section)
            stack.append(section)
        elif kind == "^":
            current.children.append(_Ref(name))
            section = _Section(opener=name)
            current.children.append(section)
            stack.append(section)
        elif kind == "/":
            _close(stack, name)
    _ensure_closed(stack)
    return root


def _close(stack: List[_Section], name: str) -> None:
    if len(stack) == 1:
        raise TemplateError(f"closing tag {name!r} without an open section")
    if stack[-1].opener != name:
        raise TemplateError(f"closing tag {name!r} does not match open section {stack[-1].opener!r}")
    stack.pop()


def _ensure_closed(stack: List[_Section]) -> None:
    if len(stack) > 1:
        raise TemplateError(f"unclosed section {stack[-1].opener!r}")


def _hbs_args(expr: str) -> Tuple[List[str], Set[str]]:
    """Split a Handlebars expression into path arguments and block params."""
    params: Set[str] = set()
    m = re.search(r"\bas\s*\|([^|]*)\|", expr)
    if m:
        params = set(m.group(1).split())
        expr = expr[:m.start()]
    tokens = _HBS_ARG.findall(expr)
    args: List[str] = []
    after_paren = False
    for tok in tokens:
        if tok == "(":
            after_paren = True
            continue
        if tok == ")":
            continue
        if after_paren:
            # helper name of a subexpression
            after_paren = False
            continue
        if "=" in tok and not tok.startswith(("'", '"')):
            tok = tok.split("=", 1)[1]
            if not tok:
                continue
        args.append(tok)
    return args, params


def _is_hbs_path(tok: str) -> bool:
    return not (
        tok.startswith(("'", '"', "@"))
        or tok in _HBS_LITERALS
        or _NUMBER.match(tok)
    )


def _handlebars_tree(text: str) -> _Section:
    root = _Section(opener="")
    stack = [root]
    for m in _HBS_TAG.finditer(text):
        body = m.group(2).strip()
        if not body or body.startswith("!"):
            continue
        current = stack[-1]
        if body.startswith("{"):
            body = body[1:-1].strip()
        elif body.startswith("&"):
            body = body[1:].strip()
        elif body.startswith(">"):
            continue
        elif body.startswith("/"):
            _close(stack, body[1:].strip())
            continue
        elif body in ("else", "^"):
            continue
        elif body.startswith("else "):
            args, _ = _hbs_args(body[len("else "):])
            current.children.extend(_Ref(a) for a in args[1:] if _is_hbs_path(a))
            continue
        elif body.startswith(("#", "^")):
            inverted = body[0] == "^"
            expr = body[1:].strip()
            if expr.startswith((">", "*")):
                # partial block or decorator block: body is not data-bound here
                section = _Section(opener=expr[1:].split()[0] if expr[1:].split() else "")
                current.children.append(section)
                stack.append(section)
                continue
            args, params = _hbs_args(expr)
            if not args:
                raise TemplateError(f"empty block expression in {m.group(0)!r}")
            head, rest = args[0], [a for a in args[1:] if _is_hbs_path(a)]
            if inverted or head in ("if", "unless") or (rest and head not in ("each", "with")):
                refs = [head] if inverted or len(args) == 1 else rest
                current.children.extend(_Ref(a) for a in refs if _is_hbs_path(a))
                section = _Section(opener=head, locals=params)
            elif head in ("each", "with"):
                section = _Section(opener=head, path=rest[0] if rest else None, locals=params)
            else:
                section = _Section(opener=head, path=head, locals=params)
            current.children.append(section)
            stack.append(section)
            continue

        args, _ = _hbs_args(body)
        if len(args) == 1:
            if _is_hbs_path(args[0]):
                current.children.append(_Ref(args[0]))
        else:
            current.children.extend(_Ref(a) for a in args[1:] if _is_hbs_path(a))
    _ensure_closed(stack)
    return root


def _resolve_scope(path: str, scopes: List[Dict[str, Any]], separators: str) -> Tuple[Optional[Dict[str, Any]], List[str]]:
    depth = 0
    while path.startswith("../"):
        depth += 1
        path = path[3:]
    for prefix in ("this.", "this/", "./"):
        if path.startswith(prefix):
            path = path[len(prefix):]
            break
    if path in ("", ".", "this"):
        return None, []
    scope = scopes[max(0, len(scopes) - 1 - depth)]
    return scope, [p for p in re.split(separators, path) if p]


def _add_path(path: str, scopes: List[Dict[str, Any]], locals_: Set[str], separators: str) -> Optional[Dict[str, Any]]:
    scope, parts = _resolve_scope(path, scopes, separators)
    if scope is None or not parts or parts[0] in locals_:
        return None
    for part in parts:
        scope = scope.setdefault(part, {})
    return scope


def _walk(node: _Section, scopes: List[Dict[str, Any]], locals_: Set[str], separators: str) -> None:
    for child in node.children:
        if isinstance(child, _Ref):
            _add_path(child.path, scopes, locals_, separators)
            continue
        inner_scopes = scopes
        if child.path is not None:
            target = _add_path(child.path, scopes, locals_, separators)
            if target is not None:
                inner_scopes = scopes + [target]
        _walk(child, inner_scopes, locals_ | child.locals, separators)
