"""进程间通信抽象（中文注释版）。

谱求解与诊断只依赖下列集合通信：
- `all_to_all`：FFT 转置（slab 重新分布）与 ghost 交换；
- `all_reduce_sum`：全局诊断量归约；
- `all_gather_object`：小对象收集；
- `barrier`：保证一步内“先算完应力，再更新序参量”。

提供三种实现：
1. `SerialCommunicator`：单 rank，集合操作退化为恒等；
2. `InProcessGroup`：同一进程内以线程承载多个逻辑 rank，用 `threading.Barrier` 同步；
3. `TorchDistCommunicator`：封装已初始化的 `torch.distributed` 进程组。

所有集合调用均为阻塞式，没有超时或取消语义。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import threading
from typing import Any, Callable, List, Sequence, Tuple, TypeVar

import torch
import torch.distributed as dist

T = TypeVar("T")


class Communicator(ABC):
    """集合通信接口。"""

    rank: int = 0
    size: int = 1

    @abstractmethod
    def all_to_all(self, send: Sequence[torch.Tensor], recv_shapes: Sequence[Tuple[int, ...]]) -> List[torch.Tensor]:
        """向每个 rank 发送 `send[r]`，返回来自每个 rank 的张量（形状由 `recv_shapes` 给定）。"""

    @abstractmethod
    def all_reduce_sum(self, tensor: torch.Tensor) -> torch.Tensor:
        """全局求和，返回新张量。"""

    @abstractmethod
    def all_gather_object(self, obj: Any) -> List[Any]:
        """收集各 rank 的 Python 对象。"""

    @abstractmethod
    def barrier(self) -> None:
        """全局同步点。"""


def _check_send_count(send: Sequence[torch.Tensor], recv_shapes: Sequence[Tuple[int, ...]], size: int) -> None:
    if len(send) != size or len(recv_shapes) != size:
        raise ValueError(
            f"all_to_all expects {size} send tensors and {size} receive shapes, "
            f"got {len(send)} and {len(recv_shapes)}."
        )


class SerialCommunicator(Communicator):
    """单进程通信器。"""

    def __init__(self) -> None:
        self.rank = 0
        self.size = 1

    def all_to_all(self, send: Sequence[torch.Tensor], recv_shapes: Sequence[Tuple[int, ...]]) -> List[torch.Tensor]:
        _check_send_count(send, recv_shapes, self.size)
        return [send[0].clone()]

    def all_reduce_sum(self, tensor: torch.Tensor) -> torch.Tensor:
        return tensor.clone()

    def all_gather_object(self, obj: Any) -> List[Any]:
        return [obj]

    def barrier(self) -> None:
        return None


class InProcessGroup:
    """同一进程内的多 rank 组（每个 rank 一个线程）。

    任一 rank 抛出异常时会 abort 屏障，其余 rank 随即以 `BrokenBarrierError`
    退出，`run` 重新抛出最先发生的原始异常。组在失败后不可复用。
    """

    def __init__(self, size: int):
        if int(size) < 1:
            raise ValueError(f"InProcessGroup size must be >= 1, got {size}.")
        self.size = int(size)
        self._barrier = threading.Barrier(self.size)
        self._slots: List[Any] = [None] * self.size

    def communicator(self, rank: int) -> "InProcessCommunicator":
        """返回指定 rank 的通信器。"""
        if not 0 <= int(rank) < self.size:
            raise ValueError(f"rank {rank} out of range for group of size {self.size}.")
        return InProcessCommunicator(self, int(rank))

    def _exchange(self, rank: int, payload: Any) -> List[Any]:
        """每个 rank 放入一个对象并取回全部对象。"""
        self._slots[rank] = payload
        self._barrier.wait()
        out = list(self._slots)
        # 第二道屏障：所有 rank 读完后才允许下一轮覆盖槽位。
        self._barrier.wait()
        return out

    def run(self, fn: Callable[[Communicator], T]) -> List[T]:
        """在 `size` 个线程上执行 `fn(comm)`，按 rank 顺序返回结果。"""
        results: List[Any] = [None] * self.size
        errors: List[BaseException | None] = [None] * self.size

        def target(rank: int) -> None:
            try:
                results[rank] = fn(self.communicator(rank))
            except BaseException as exc:
                errors[rank] = exc
                self._barrier.abort()

        threads = [threading.Thread(target=target, args=(r,), name=f"pfdd-rank-{r}") for r in range(self.size)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        primary = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
        if primary:
            raise primary[0]
        broken = [e for e in errors if e is not None]
        if broken:
            raise broken[0]
        return results


class InProcessCommunicator(Communicator):
    """`InProcessGroup` 中单个 rank 的视图。"""

    def __init__(self, group: InProcessGroup, rank: int):
        self._group = group
        self.rank = rank
        self.size = group.size

    def all_to_all(self, send: Sequence[torch.Tensor], recv_shapes: Sequence[Tuple[int, ...]]) -> List[torch.Tensor]:
        _check_send_count(send, recv_shapes, self.size)
        # 发送前拷贝，发送方返回后可自由改写自己的缓冲区。
        payloads = self._group._exchange(self.rank, [t.clone() for t in send])
        out = []
        for src in range(self.size):
            t = payloads[src][self.rank]
            if tuple(t.shape) != tuple(recv_shapes[src]):
                raise ValueError(
                    f"rank {self.rank} expected shape {tuple(recv_shapes[src])} from rank {src}, got {tuple(t.shape)}."
                )
            out.append(t)
        return out

    def all_reduce_sum(self, tensor: torch.Tensor) -> torch.Tensor:
        parts = self._group._exchange(self.rank, tensor.clone())
        total = torch.zeros_like(tensor)
        for p in parts:
            total = total + p
        return total

    def all_gather_object(self, obj: Any) -> List[Any]:
        return self._group._exchange(self.rank, obj)

    def barrier(self) -> None:
        self._group._barrier.wait()


def _as_wire(t: torch.Tensor) -> torch.Tensor:
    """复数张量转为实数视图（部分后端不支持复数通信）。"""
    if t.is_complex():
        return torch.view_as_real(t.contiguous()).contiguous()
    return t.contiguous()


class TorchDistCommunicator(Communicator):
    """基于默认 `torch.distributed` 进程组的通信器。"""

    def __init__(self) -> None:
        if not dist.is_available() or not dist.is_initialized():
            raise RuntimeError("torch.distributed process group is not initialized.")
        self.rank = int(dist.get_rank())
        self.size = int(dist.get_world_size())

    def all_to_all(self, send: Sequence[torch.Tensor], recv_shapes: Sequence[Tuple[int, ...]]) -> List[torch.Tensor]:
        _check_send_count(send, recv_shapes, self.size)
        ref = send[self.rank]
        recv: List[torch.Tensor] = []
        for shape in recv_shapes:
            recv.append(torch.empty(tuple(shape), dtype=ref.dtype, device=ref.device))
        wires = [_as_wire(r) for r in recv]
        reqs = []
        for peer in range(self.size):
            if peer == self.rank:
                continue
            # 空块两端都能从 slab 信息推断出来，直接跳过。
            if send[peer].numel() > 0:
                reqs.append(dist.isend(_as_wire(send[peer]), dst=peer))
            if recv[peer].numel() > 0:
                reqs.append(dist.irecv(wires[peer], src=peer))
        for r in reqs:
            r.wait()
        out = []
        for peer in range(self.size):
            if peer == self.rank:
                out.append(send[peer].clone())
            elif ref.is_complex():
                out.append(torch.view_as_complex(wires[peer]))
            else:
                out.append(wires[peer])
        return out

    def all_reduce_sum(self, tensor: torch.Tensor) -> torch.Tensor:
        out = tensor.clone().contiguous()
        wire = torch.view_as_real(out) if out.is_complex() else out
        dist.all_reduce(wire, op=dist.ReduceOp.SUM)
        return out

    def all_gather_object(self, obj: Any) -> List[Any]:
        out: List[Any] = [None] * self.size
        dist.all_gather_object(out, obj)
        return out

    def barrier(self) -> None:
        dist.barrier()


def build_communicator(parallel: str) -> Communicator:
    """按 `runtime.parallel` 构造通信器。

    `threads` 模式需要由 `run_in_process` 统一派生各 rank，因此这里不支持。
    """
    mode = str(parallel).strip().lower()
    if mode == "serial":
        return SerialCommunicator()
    if mode == "torch_distributed":
        if not dist.is_initialized():
            # 由 torchrun 等启动器提供 env:// 所需的环境变量。
            dist.init_process_group(backend="gloo")
        return TorchDistCommunicator()
    if mode == "threads":
        raise ValueError("parallel='threads' must be launched through run_in_process().")
    raise ValueError(f"Unsupported parallel mode: {parallel}")
