# modproxy

Building blocks for a Go module proxy that caches modules fetched with the
`go` command. The package has no dependencies outside the standard library.

## What is inside

- `modproxy.errors`: `AthensError`, an exception that carries an operation,
  a kind (an HTTP status code from `Kind`), the module, the version and a
  log severity (`Level`). Build one with `e(op, ...)`; each extra argument
  is recognised by its type (an exception, a message string, a
  `ModulePath`, a `ModuleVersion`, a `Level` or an integer kind). Inspect
  errors with `kind`, `kind_text`, `is_kind`, `severity`, `expect`, `ops`,
  `is_not_found_err` and `is_repo_not_found_err`.
- `modproxy.paths`: `decode_path` turns a safe-encoded module path
  (`!a` for `A`) back into the path; `get_module`, `get_version` and
  `get_all_params` read route variables; `matches_pattern` matches
  GOPRIVATE-style glob patterns against a module path and everything
  below it.
- `modproxy.filter`: `Filter` holds include, exclude and direct rules
  (`FilterRule`) for module paths, with optional version qualifiers
  (`v1.2.`, `~v1.2.3`, `^v1.2.3`, `<v1.2.3`). `new_filter` reads a filter
  file and returns `None` for an empty path.
- `modproxy.index`: the `Indexer` interface with `MemIndexer`, which keeps
  `Line` entries in memory and refuses duplicates with an
  `ALREADY_EXISTS` error, and `NopIndexer`, which records nothing.
- `modproxy.log`: `Logger` and `Entry`, a structured logger writing
  plain JSON, JSON with GCP field names (`"GCP"`) or coloured development
  text (`"none"`); `system_err` logs an `AthensError` at its own severity
  with its context as fields. `set_entry_in_context` and
  `entry_from_context` carry an entry in a request context.
- `modproxy.requestid`: keep a request id in a request context.
- `modproxy.goenv`: `prepare_env` builds the environment for the `go`
  command; `clear_files` removes a scratch GOPATH; `ZipReadCloser` reads a
  downloaded zip and deletes its GOPATH when closed.
- `modproxy.fetcher`: `GoGetFetcher` (made with `new_go_get_fetcher`)
  runs `go mod download -json` in a scratch GOPATH and returns a
  `FetchedVersion` with the .info, .mod and .zip.
- `modproxy.lister`: `VCSLister` runs `go list -m -versions -json` and
  returns a `RevInfo` and the list of versions.
- `modproxy.middleware`: WSGI middleware: `cache_control`,
  `content_type`, `with_request_id`, `log_entry_middleware`,
  `request_logger` and `new_filter_middleware` (403 for excluded modules,
  303 redirect upstream for direct ones). Route parameters are read from
  `environ["wsgiorg.routing_args"]`.
- `modproxy.validation`: `new_validation_middleware` POSTs the module and
  version to a webhook through `validate`; a 200 reply lets the request
  through, 403 refuses it and anything else answers 500.
- `modproxy.stash`: `new_stasher` fetches a module and saves it to a
  `StorageBackend` and an `Indexer`, returning the semantic version saved.
  Wrappers: `with_singleflight` (one stash per module@version among
  concurrent callers), `with_pool` (at most n at a time) and
  `with_gcs_lock` (a duplicate write counts as success).

## Install

    pip install modproxy

## Example

    from modproxy.filter import Filter, FilterRule

    flt = Filter()
    flt.add_rule("", None, FilterRule.EXCLUDE)
    flt.add_rule("github.com/public", None, FilterRule.INCLUDE)
    assert flt.rule("github.com/public/repo", "v1.0.0") is FilterRule.INCLUDE
    assert flt.rule("github.com/other/repo", "v1.0.0") is FilterRule.EXCLUDE

A filter file holds one rule per line: `+` includes, `-` excludes and `D`
sends the request straight to the upstream proxy. A line with no path sets
the rule for every module. Lines starting with `#` are comments.

    -
    + github.com/public
    D github.com/upstream-only v1.,~v2.3.0

Load it with `new_filter("filter.conf")` or `Filter.from_config(...)`.

## What it does not do

This package is a set of parts, not a running proxy. It has no command,
no HTTP server and no router: the middleware expects a WSGI router to put
the module and version into `wsgiorg.routing_args`. It ships no storage
backend, only the `StorageBackend` interface a stasher writes to, and no
index that outlives the process. There is no distributed locking, tracing
or metrics export.

## Tests

    pip install modproxy[test]
    pytest