# rootlesskit

Python building blocks for running containers without root privileges on Linux.

The package is a library. It has no modules that start a program; every piece
is imported and called from your own code. Errors are raised as exceptions,
and warnings about the host go through the standard `logging` module.

## What is in it

| Module | What it does |
| --- | --- |
| `rootlesskit.port` | `Spec` and `Status` records (with `to_dict` / `Spec.from_dict` for their JSON form), `ChildContext`, `PortDriverInfo`, and the abstract `ParentDriver` and `ChildDriver` interfaces. |
| `rootlesskit.portutil` | `parse_port_spec`, `validate_port_spec`, `validate_proto`. |
| `rootlesskit.idtools` | `SubIDRange`, `parse_subid_file`, and `get_subid_ranges`, which reads `/etc/subuid` and `/etc/subgid` (or paths you pass) and raises `LookupError` when the user has no ranges. |
| `rootlesskit.dynidtools` | `get_subid_ranges` by running `getsubids` (or the program named in `$GETSUBIDS`), `exec_getsubids`, `parse_getsubids_output`, `without_duplicates`. |
| `rootlesskit.parent` | `SubidSource` (`auto`, `dynamic`, `static`), `current_user`, `check_preflight`, `create_cleanup_lock`, `lock_state_dir` / `StateDirLock`, `init_state_dir`, `get_subid_ranges`, `newugidmap_args`, `newugidmap_args_from_subid_ranges`, and `setup_uidgid_map`, which runs `newuidmap` and `newgidmap` for a process. |
| `rootlesskit.warn` | `warn_sysctl` (checks `kernel.unprivileged_userns_clone` and `user.max_user_namespaces`) and `warn_propagation`. |
| `rootlesskit.mountinfo` | `MountInfo`, `parse_mountinfo`, `get_mounts`, and the filters `fstype_filter` and `single_entry_filter`. |
| `rootlesskit.cgrouputil` | `evacuate_cgroup2`, `find_cgroup2_mountpoint`, `get_cgroup2`, `get_cgroup2_from_proc_pid_cgroup`. |
| `rootlesskit.sigproxy` | `signal_map` (Linux signal names to numbers, with the MIPS variant) and `forward_all_signals`, which returns a `SignalForwarder` that passes every caught signal to a process until `stop()` is called. |
| `rootlesskit.slirp4netns` | A port driver that adds and removes host forwards through the slirp4netns API socket: `new_parent_driver`, `new_child_driver`, `call_api`. |
| `rootlesskit.builtin_parent`, `rootlesskit.builtin_child` | The builtin port driver. The parent listens on host ports; for each TCP connection or UDP client it asks the child driver, over a UNIX socket, for a socket dialled inside the child's network namespace and copies traffic between the two. `new_parent_driver`, `new_child_driver`, `is_eperm`, `annotate_eperm`. |
| `rootlesskit.builtin_msg`, `rootlesskit.builtin_tcp`, `rootlesskit.builtin_udp`, `rootlesskit.udpproxy` | The pieces the builtin driver is made of: length-prefixed JSON messages with file-descriptor passing, TCP forwarding (`run`, `bicopy`), UDP forwarding (`run`) and a per-client UDP proxy (`UDPProxy`). |
| `rootlesskit.version` | `VERSION`. |

## Installing

```
pip install .
```

Running the tests:

```
pip install ".[test]"
pytest
```

## Examples

Parsing and validating a port spec. The format is
`<parent IP>:<parent port>[:<child IP>]:<child port>/<proto>`, with IPv6
addresses in square brackets:

```python
from rootlesskit.portutil import parse_port_spec, validate_port_spec

spec = parse_port_spec("127.0.0.1:8080:10.0.2.100:80/tcp")
assert spec.parent_port == 8080 and spec.child_ip == "10.0.2.100"

spec6 = parse_port_spec("[::1]:8080:[::2]:80/udp")
assert spec6.parent_ip == "::1" and spec6.child_ip == "::2"

validate_port_spec(spec, {})  # raises ValueError when invalid or conflicting
```

Computing the arguments for `newuidmap` and `newgidmap`:

```python
from rootlesskit.idtools import SubIDRange
from rootlesskit.parent import current_user, newugidmap_args_from_subid_ranges

user = current_user()
ranges = [SubIDRange(100000, 65536)]
uid_args, gid_args = newugidmap_args_from_subid_ranges(user, ranges, ranges)
# uid_args == ["0", user.uid, "1", "1", "100000", "65536"]
```

Locking a state directory so that no second instance uses it:

```python
from rootlesskit.parent import init_state_dir, lock_state_dir

init_state_dir("/run/user/1000/rootlesskit")
with lock_state_dir("/run/user/1000/rootlesskit"):
    ...
```

Running the builtin port driver. Parent and child drivers run in threads and
stop when `quit` is set:

```python
import sys
import threading

from rootlesskit.builtin_child import new_child_driver
from rootlesskit.builtin_parent import new_parent_driver
from rootlesskit.portutil import parse_port_spec

parent = new_parent_driver(sys.stderr, "/run/user/1000/rootlesskit")
child = new_child_driver(sys.stderr)
ready, quit = threading.Event(), threading.Event()

threading.Thread(
    target=child.run_child_driver, args=(parent.opaque_for_child(), quit, ""), daemon=True
).start()
threading.Thread(target=parent.run_parent_driver, args=(ready, quit, None), daemon=True).start()
ready.wait()

status = parent.add_port(parse_port_spec("127.0.0.1:8080:80/tcp"))
print(parent.list_ports())
parent.remove_port(status.id)
quit.set()
```

In real use the child driver runs inside the child's user and network
namespaces; started as above, both sides share the current namespaces.

## What the package does not do

- There is no command-line launcher and no control command. Nothing here
  creates the user, mount, network, PID or other namespaces, starts the child
  process, or waits on it; `parent` provides the steps around that
  (preflight checks, state-directory locks, UID/GID maps) for code that does.
- There is no REST API server on the state directory's `api.sock`.
- There are no network drivers: nothing sets up slirp4netns, a TAP device or
  any other network for the child. The `slirp4netns` port driver expects a
  slirp4netns API socket that something else provides.