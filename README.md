# upfcore

The control and data-path logic of a 5G user plane function (UPF), in plain
Python with no third-party dependencies.

## What is in it

- `upfcore.pdr`: decodes PFCP information elements into packet detection
  rules (`PDR`, `PDI`, `FTEID`, `UEIPAddress`, `SDFFilter`) with
  `pdr_from_ies`. Every error in the package is raised as `upfcore.pdr.UpfError`.
- `upfcore.farqer`: forwarding action rules and QoS enforcement rules
  (`FAR`, `QER`, `ApplyAction`, `OuterHeaderCreation`, ...), built with
  `far_from_ies` and `qer_from_ies`.
- `upfcore.match`: compiles a PDR into a `MatchRule` with
  `compile_match_rule`, including SDF filter flow descriptions such as
  `permit out 17 from 10.0.0.0/8 1000-2000 to 60.60.0.1 2152`.
- `upfcore.packets`: `MatchTable` matches IPv4 packets by destination
  address (`find_by_ue_ip`) and GTP-U packets by TEID (`find_by_teid`),
  taking the lowest precedence rule first.
- `upfcore.store`: `RuleStore` keeps PDRs, FARs and QERs by ID and per
  session (`RuleSet`), mirroring PDRs into its match table.
- `upfcore.session`: `UpfContext` holds sessions, their SEIDs and the
  per-PDR packet buffers (`BufPacket`).
- `upfcore.gtp`: builds GTP-U echo responses and T-PDUs and walks a packet
  buffer (`build_echo_response`, `build_tpdu`, `iter_buffered_packets`).
- `upfcore.datapath`: `DataPath` classifies incoming packets
  (`packet_in_l3`, `packet_in_gtpu`), answers echo requests, buffers
  packets whose FAR says BUFF and later sends them out with
  `send_buffered_packets`.
- `upfcore.handler`: `N4Handler` applies session establishment,
  modification and deletion requests and association release to a
  `UpfContext`, returning a PFCP `Cause`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Examples

Establish a session with one FAR and one downlink PDR:

```python
import ipaddress

from upfcore.farqer import FARIEs
from upfcore.handler import Cause, EstablishmentRequest, N4Handler
from upfcore.pdr import PDIIEs, PDRIEs
from upfcore.session import PdnType, UpfContext

context = UpfContext()
session = context.add_session("60.60.0.1", "internet", PdnType.IPV4)
handler = N4Handler(context)

request = EstablishmentRequest(
    create_fars=[FARIEs(far_id=(1).to_bytes(4, "big"), apply_action=bytes([0x02]))],
    create_pdrs=[
        PDRIEs(
            pdr_id=(1).to_bytes(2, "big"),
            precedence=(255).to_bytes(4, "big"),
            pdi=PDIIEs(
                source_interface=bytes([1]),
                ue_ip_address=bytes([0x02]) + ipaddress.IPv4Address("60.60.0.1").packed,
            ),
            far_id=(1).to_bytes(4, "big"),
        )
    ],
    cp_seid=1,
)
assert handler.handle_session_establishment(session, request) is Cause.REQUEST_ACCEPTED
```

Classify packets; the caller supplies the function that sends datagrams:

```python
from upfcore.datapath import DataPath, PacketVerdict

def send(data, address):
    sock.sendto(data, address)

datapath = DataPath(context, send)
verdict, pdr = datapath.packet_in_l3(ip_packet)
```

Answer a GTP-U echo request directly:

```python
from upfcore.gtp import build_echo_response

reply = build_echo_response(request_bytes)
```

## What it does not do

- It opens no sockets and runs no server or command; the caller receives
  packets and passes a `send` function to `DataPath`.
- It does not decode or encode whole PFCP messages. `N4Handler` takes the
  information elements already split out (`PDRIEs`, `FARIEs`, `QERIEs`,
  `EstablishmentRequest`, `ModificationRequest`) and returns a `Cause`
  instead of building a response message; there are no PFCP transactions,
  heartbeats or association setup.
- It reads no configuration file and programs no kernel tunnel device;
  rules live only in memory.
- IPv6 UE addresses are stored on sessions but not used for packet matching.