"""Tests for the container engine wrapper: stream demultiplexing and specs."""

from __future__ import annotations

import socket
import struct

import docker.types
import pytest

from sandgate.sandbox.engine import (
    STDERR,
    STDOUT,
    ContainerSpec,
    OutputStream,
    StreamDemuxer,
    VolumeMount,
    demux_output,
)


def frame(stream_id: int, payload: bytes) -> bytes:
    return struct.pack(">BxxxL", stream_id, len(payload)) + payload


# ── StreamDemuxer ────────────────────────────────────────────────────────────


class TestStreamDemuxer:
    def test_single_frame(self):
        d = StreamDemuxer()
        assert d.feed(frame(STDOUT, b"hello")) == [(STDOUT, b"hello")]
        assert d.pending == 0

    def test_frame_split_across_chunks(self):
        d = StreamDemuxer()
        data = frame(STDERR, b"boom")
        assert d.feed(data[:3]) == []
        assert d.feed(data[3:9]) == []
        assert d.pending == 9
        assert d.feed(data[9:]) == [(STDERR, b"boom")]
        assert d.pending == 0

    def test_several_frames_in_one_chunk(self):
        d = StreamDemuxer()
        data = frame(STDOUT, b"a") + frame(STDERR, b"b") + frame(STDOUT, b"c")
        assert d.feed(data) == [(STDOUT, b"a"), (STDERR, b"b"), (STDOUT, b"c")]

    def test_no_line_framing_assumed(self):
        d = StreamDemuxer()
        payload = b"line1\nline2\n\x00binary\xff"
        assert d.feed(frame(STDOUT, payload)) == [(STDOUT, payload)]

    def test_empty_payload_frame(self):
        d = StreamDemuxer()
        assert d.feed(frame(STDOUT, b"")) == [(STDOUT, b"")]


class TestDemuxOutput:
    def test_splits_streams_in_order(self):
        data = frame(STDOUT, b"out1 ") + frame(STDERR, b"err") + frame(STDOUT, b"out2")
        assert demux_output(data) == (b"out1 out2", b"err")

    def test_incomplete_tail_dropped(self):
        data = frame(STDOUT, b"ok") + frame(STDOUT, b"partial")[:-3]
        assert demux_output(data) == (b"ok", b"")


# ── OutputStream ─────────────────────────────────────────────────────────────


class TestOutputStream:
    @pytest.mark.asyncio
    async def test_reads_frames_until_eof(self):
        reader, writer = socket.socketpair()
        try:
            writer.sendall(frame(STDOUT, b"hello ") + frame(STDERR, b"warn") + frame(STDOUT, b"world"))
            writer.shutdown(socket.SHUT_WR)

            stream = OutputStream(reader)
            frames = [f async for f in stream]
            await stream.aclose()
        finally:
            writer.close()

        assert frames == [(STDOUT, b"hello "), (STDERR, b"warn"), (STDOUT, b"world")]

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        reader, writer = socket.socketpair()
        try:
            stream = OutputStream(reader)
            await stream.aclose()
            await stream.aclose()
        finally:
            writer.close()


# ── ContainerSpec ────────────────────────────────────────────────────────────


class TestContainerSpec:
    def test_hardening_kwargs(self):
        spec = ContainerSpec(
            name="sandgate-sandbox-r1",
            image="img",
            entrypoint=["sh", "-c", "true"],
            labels={"sandgate.role": "sandbox"},
            working_dir="/workspace",
            user="sandboxer",
            network_mode="none",
            binds=["/host/ws:/workspace:rw"],
            memory_bytes=256 * 1024 * 1024,
            read_only=True,
            tmpfs={"/tmp": "rw,size=64m"},
            cap_drop=["ALL"],
            security_opt=["no-new-privileges"],
            pids_limit=256,
        )
        kwargs = spec.to_create_kwargs()
        assert kwargs["name"] == "sandgate-sandbox-r1"
        assert kwargs["entrypoint"] == ["sh", "-c", "true"]
        assert kwargs["network_mode"] == "none"
        assert "network" not in kwargs
        assert kwargs["mem_limit"] == kwargs["memswap_limit"] == 256 * 1024 * 1024
        assert kwargs["read_only"] is True
        assert kwargs["cap_drop"] == ["ALL"]
        assert kwargs["security_opt"] == ["no-new-privileges"]
        assert kwargs["pids_limit"] == 256
        assert kwargs["tty"] is False
        assert kwargs["volumes"] == ["/host/ws:/workspace:rw"]

    def test_named_network_wins_over_mode(self):
        spec = ContainerSpec(name="x", image="img", network_mode="none", network="sandbox-internal")
        kwargs = spec.to_create_kwargs()
        assert kwargs["network"] == "sandbox-internal"
        assert "network_mode" not in kwargs

    def test_volume_mounts(self):
        spec = ContainerSpec(
            name="x", image="img", volume_mounts=[VolumeMount("sock-vol", "/llm-sock")]
        )
        (mount,) = spec.to_create_kwargs()["mounts"]
        assert isinstance(mount, docker.types.Mount)
        assert mount["Target"] == "/llm-sock"
        assert mount["Source"] == "sock-vol"
        assert mount["Type"] == "volume"
