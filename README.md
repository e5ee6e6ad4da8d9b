# magnetleech

Tools for fetching and inspecting BitTorrent metadata:

- a bencode codec (`magnetleech.codec`);
- torrent metainfo and info dictionaries, v1 and v2 file trees, piece helpers
  (`magnetleech.metainfo`, `magnetleech.info`, `magnetleech.filetree`);
- magnet link parsing and formatting, including hybrid v1/v2 links
  (`magnetleech.magnet`);
- the Message Stream Encryption handshake and the BitTorrent peer handshake
  (`magnetleech.mse`, `magnetleech.btconn`);
- a ut_metadata leech and a sink that drives leeches for discovered info hashes
  and hands back verified metadata (`magnetleech.leech`, `magnetleech.sink`,
  `magnetleech.extract`, `magnetleech.peers`);
- a loader for `<username>:<bcrypt hash>` credential files
  (`magnetleech.credentials`).

The package has no runtime dependencies beyond Python 3.10 or later.

## Installation

```
pip install .
```

## Examples

Parse a magnet link and format it again:

```python
from magnetleech.magnet import parse_magnet_uri

magnet = parse_magnet_uri(
    "magnet:?xt=urn:btih:51340689c960f0778a4387aef9b4b52fd08390cd&dn=Example"
)
print(magnet.display_name)
print(str(magnet))
```

Load a torrent file and build a magnet link from it:

```python
from magnetleech.metainfo import load_from_file

meta = load_from_file("example.torrent")
info = meta.unmarshal_info()
print(info.best_name(), info.total_length(), info.num_pieces())
print(str(meta.magnet(None, info)))
```

Check downloaded metadata against its info hash:

```python
from magnetleech.extract import extract_metadata

metadata = extract_metadata(raw_info_bytes, info_hash, discovered_on)
for file in metadata.files:
    print(file.path, file.size)
```

Collect metadata for info hashes found on the DHT:

```python
from magnetleech.sink import Sink

sink = Sink(deadline, max_leeches, filter_networks)
sink.sink(result)            # result exposes an info hash and peer addresses
for metadata in sink.drain():
    print(metadata.name)
sink.terminate()
```

## Running the tests

```
pip install .[test]
pytest
```