"""Pytest fixtures: an in-process cluster (threads as ranks) and rate tables."""

import functools
import queue
import threading

import numpy as np
import pytest

from core.decomposition import ClusterContext
from core.rate_table import RateTable
from tools.make_rate_tables import build_tables, write_tables

OPS = {"max": "max", "min": "min", "sum": "sum"}
_SCALAR = {"max": max, "min": min, "sum": lambda a, b: a + b}
_ARRAY = {"max": np.maximum, "min": np.minimum, "sum": np.add}
TIMEOUT = 60.0


class ThreadWorld:
    """Shared state of a fake communicator whose ranks are threads."""

    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=TIMEOUT)
        self.slots = [None]*size
        self._lock = threading.Lock()
        self._queues = {}

    def channel(self, src, dst, tag):
        with self._lock:
            key = (src, dst, tag)
            if key not in self._queues:
                self._queues[key] = queue.Queue()
            return self._queues[key]


class ThreadComm:
    """The subset of the mpi4py communicator API the solver uses."""

    def __init__(self, world, rank):
        self.world = world
        self.rank = rank

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.world.size

    def _collective(self, value, combine):
        w = self.world
        w.slots[self.rank] = value
        w.barrier.wait()
        out = combine(list(w.slots))
        w.barrier.wait()
        return out

    def allreduce(self, value, op="sum"):
        return self._collective(value, lambda vals: functools.reduce(_SCALAR[op], vals))

    def reduce(self, value, op="sum", root=0):
        out = self.allreduce(value, op)
        return out if self.rank == root else None

    def Allreduce(self, send, recv, op="sum"):
        recv[...] = self._collective(np.array(send, copy=True),
                                     lambda vals: functools.reduce(_ARRAY[op], vals))

    def bcast(self, obj, root=0):
        return self._collective(obj, lambda vals: vals[root])

    def Barrier(self):
        self.world.barrier.wait()

    def Send(self, buf, dest, tag=0):
        self.world.channel(self.rank, dest, tag).put(np.array(buf, copy=True))

    def Recv(self, buf, source, tag=0):
        buf[...] = self.world.channel(source, self.rank, tag).get(timeout=TIMEOUT)

    def Sendrecv(self, sendbuf, dest, sendtag, recvbuf, source, recvtag):
        self.Send(sendbuf, dest, sendtag)
        self.Recv(recvbuf, source, recvtag)

    def Abort(self, code=1):
        raise SystemExit(code)


def make_contexts(size):
    world = ThreadWorld(size)
    return [ClusterContext(ThreadComm(world, r), ops=OPS) for r in range(size)]


def run_ranks(size, fn):
    """Run fn(ctx) on ``size`` thread-ranks; returns the per-rank results."""
    ctxs = make_contexts(size)
    if size == 1:
        return [fn(ctxs[0])]
    results, errors = [None]*size, [None]*size

    def target(r):
        try:
            results[r] = fn(ctxs[r])
        except BaseException as exc:  # re-raised on the main thread below
            errors[r] = exc
            ctxs[r].comm.world.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,)) for r in range(size)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()
    for exc in errors:
        if exc is not None and not isinstance(exc, threading.BrokenBarrierError):
            raise exc
    for exc in errors:
        if exc is not None:
            raise exc
    return results


@pytest.fixture
def ctx():
    """Single-rank cluster context."""
    return make_contexts(1)[0]


@pytest.fixture(scope="session")
def rate_table():
    _, tables = build_tables()
    return RateTable(tables)


@pytest.fixture(scope="session")
def rate_table_file(tmp_path_factory):
    path = tmp_path_factory.mktemp("tables")/"primordial_tables.h5"
    write_tables(str(path))
    return str(path)
