# mevrelay

Background services for an MEV-Boost relay:

- **Housekeeper** (`mevrelay.housekeeper`) – follows the beacon chain head,
  logs missed slots, keeps proposer duties for the current and next epoch up
  to date in the cache, publishes the latest slot for the website, and copies
  the latest validator registration timestamps from the database into the
  cache.
- **Webserver** (`mevrelay.website`) – serves the relay's status page. The
  page is re-rendered every ten seconds in three orderings (default, by value
  descending, by value ascending), minified, and served on `/`, chosen by the
  `order_by` query parameter (`-value` or `value`).
- **Page helpers** (`mevrelay.html`) – template helpers, the page data and a
  small HTML minifier.

Install with `pip install .`; the only runtime dependency is Jinja2.

## Housekeeper

`Housekeeper` is built from a `HousekeeperOpts` holding the cache (`redis`),
the database (`db`), the beacon client (`beacon_client`), an optional
`logging.Logger` (`log`) and a `spawn` function used to run work in the
background (a daemon thread by default).

The collaborators are duck-typed:

- `beacon_client`: `best_sync_status()` (an object with `head_slot`),
  `get_proposer_duties(epoch)` (an iterable of objects with `pubkey`, `slot`
  and `validator_index`, such as `ProposerDuty`) and
  `subscribe_to_head_events(queue)`, which puts head events (objects with
  `slot`) on the given `queue.Queue`.
- `db`: `get_validator_registrations_for_pubkeys(pubkeys)` (entries with
  `pubkey` and `to_signed_validator_registration()`) and
  `get_latest_validator_registrations(timestamp_only)` (entries with `pubkey`
  and `timestamp`).
- `redis`: `set_stats(field, value)`, `set_proposer_duties(duties)` and
  `set_validator_registration_timestamp_if_newer(pubkey, timestamp)`.

`Housekeeper.start()` blocks: it reads the best sync status, starts copying
validator registrations in the background, processes the current head slot
and then every head event from the queue. It returns when the queue yields
`None`. Calling `start()` while it is already running raises
`ServerAlreadyStartedError`.

`process_new_slot(head_slot)` ignores slots that are not newer than the
current head, logs a warning for each skipped slot, stores the slot under the
`latest_slot` stats field and schedules a proposer duty refresh. Errors from
collaborators are logged, not raised.

`update_proposer_duties(head_slot)` runs at most one refresh at a time, and
only on a half-epoch boundary (every 16 slots) or when at least half an epoch
has passed since the last refresh. `update_proposer_duties_without_checks`
forces a refresh and returns the stored list of `ProposerDutyEntry` (slot,
validator index and the validator's signed registration), or `None` if
nothing was stored. Duties of validators without a registration are left out.

`slot_pos(slot)` gives a slot's position in its epoch, counting from 1.

## Status website

`Webserver` is built from a `WebserverOpts`, which carries the listen address
(`"host:port"`), the relay's public key, the network's `EthNetworkDetails`,
the cache, the database, the page template source (`index_template`), an
optional logger and the optional links shown on the page.

- `db`: `num_registered_validators()`,
  `get_recent_delivered_payloads(limit=..., order_by_value=...)` (payloads
  with a `slot`) and `get_num_delivered_payloads()`.
- `redis`: `get_stats(field)`, returning `None` for a missing field.

```python
from mevrelay.website import Webserver

server = Webserver(opts)
server.update_html()                  # render all three views now
page = server.handle_root("-value")   # bytes of the by-value-descending view
server.start_server()                 # serve until stop() is called
```

The template is rendered with the fields of `StatusHTMLData` as variables.
`handle_root` returns empty bytes until the first `update_html()`.

`Webserver.wsgi_app` is a plain WSGI application: `GET /` returns the page,
other methods on `/` get `405`, other paths `404`. Responses of 1400 bytes or
more are gzip-compressed when the client accepts it, and each request is
logged. `start_server()` serves it with the standard library's `wsgiref`
server and refreshes the page every ten seconds; `stop()` ends both. Starting
a webserver twice raises `ServerAlreadyStartedError`.

## Template helpers

```python
from mevrelay.html import case_it, pretty_int, wei_to_eth

wei_to_eth("1500000000000000000")  # "1.5"
pretty_int(1234567)                # "1,234,567"
case_it("mainnet")                 # "Mainnet"
```

`parse_index_template(content)` compiles a Jinja2 template with these helpers
available as filters and as functions, under both their snake-case names and
`weiToEth`, `prettyInt` and `caseIt`. Undefined variables raise an error.
`minify_html(text)` drops comments and collapses whitespace, keeping the
contents of `pre`, `textarea`, `script` and `style` as they are.

## What this package does not include

- No page template: the status page markup is passed in as
  `WebserverOpts.index_template`.
- No beacon client, database or cache implementations: the objects described
  above must be supplied by the caller.
- No command-line entry point; the services are started from Python.