"""Tests for the swarm transfer engine and image promotion."""

import os
import stat
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from prestage.config import NodeConfig, TransferConfig
from prestage.convert import ImageConverter, partial_path_for
from prestage.errors import ConversionError, TransferError
from prestage.transfer import TransferEngine, fetch_uri


class TestFetchUri:
    def test_plain_path(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_bytes(b"{}")
        assert fetch_uri(str(path)) == b"{}"
        assert fetch_uri(f"file://{path}") == b"{}"

    def test_missing_file(self, tmp_path):
        with pytest.raises(TransferError):
            fetch_uri(str(tmp_path / "missing"))

    def test_http(self, monkeypatch):
        response = MagicMock(content=b"torrent")
        get = MagicMock(return_value=response)
        monkeypatch.setattr("prestage.transfer.requests.get", get)
        assert fetch_uri("http://seed/torrent/img-1.torrent", timeout=5) == b"torrent"
        get.assert_called_once_with("http://seed/torrent/img-1.torrent", timeout=5)

    def test_http_error(self, monkeypatch):
        monkeypatch.setattr(
            "prestage.transfer.requests.get",
            MagicMock(side_effect=requests.ConnectionError("refused")),
        )
        with pytest.raises(TransferError):
            fetch_uri("http://seed/torrent/img-1.torrent")


class TestCommands:
    def test_ctorrent_fetch_command(self):
        engine = TransferEngine(TransferConfig(), NodeConfig(listen_port=2705, max_peers=7))
        cmd = engine.fetch_command("/dl/img-1.torrent", "/dl/img-1")
        assert cmd[0] == "/usr/bin/ctorrent"
        assert cmd[1:3] == ["-e", "0"]
        assert ["-p", "2705"] == cmd[cmd.index("-p"):cmd.index("-p") + 2]
        assert ["-m", "7"] == cmd[cmd.index("-m"):cmd.index("-m") + 2]
        assert cmd[-3:] == ["-s", "/dl/img-1", "/dl/img-1.torrent"]

    def test_aria2c_fetch_command(self):
        engine = TransferEngine(TransferConfig(client="aria2c"), NodeConfig())
        cmd = engine.fetch_command("/dl/img-1.torrent", "/dl/img-1")
        assert cmd[0] == "aria2c"
        assert "--dir=/dl" in cmd
        assert "--index-out=1=img-1" in cmd
        assert "--seed-time=0" in cmd
        assert engine.client_executables == ["aria2c"]

    def test_ctorrent_seed_command(self):
        engine = TransferEngine()
        cmd = engine.seed_command("/pub/img-1.torrent", "/images/img-1", 2706, upload_kbps=1000)
        assert cmd == ["/usr/bin/ctorrent", "-U", "1000", "-p", "2706", "-s", "/images/img-1", "/pub/img-1.torrent"]


class TestTransferEngine:
    @pytest.mark.asyncio
    async def test_create_metainfo(self, tmp_path, recording_executor_factory, result_factory):
        metainfo = tmp_path / "pub" / "img-1.torrent"

        def handler(command):
            Path(command[command.index("-s") + 1]).write_bytes(b"d4:infoe")
            return result_factory(True)

        executor = recording_executor_factory(handler)
        engine = TransferEngine(executor=executor)
        await engine.create_metainfo("/images/img-1", metainfo, "http://seed:6969/announce")
        (cmd,) = executor.commands
        assert cmd[1] == "-t"
        assert ["-u", "http://seed:6969/announce"] == cmd[cmd.index("-u"):cmd.index("-u") + 2]
        assert metainfo.exists()

    @pytest.mark.asyncio
    async def test_fetch(self, tmp_path, recording_executor_factory, result_factory):
        published = tmp_path / "img-1.torrent"
        published.write_bytes(b"d4:infoe")
        dest = tmp_path / "dl" / "img-1"

        def handler(command):
            Path(command[-2]).write_bytes(b"image")
            return result_factory(True)

        engine = TransferEngine(executor=recording_executor_factory(handler))
        metainfo = await engine.fetch(str(published), dest)
        assert metainfo == Path(f"{dest}.torrent")
        assert metainfo.read_bytes() == b"d4:infoe"
        assert dest.read_bytes() == b"image"

    @pytest.mark.asyncio
    async def test_fetch_client_failure(self, tmp_path, recording_executor_factory, result_factory):
        published = tmp_path / "img-1.torrent"
        published.write_bytes(b"d4:infoe")
        engine = TransferEngine(
            executor=recording_executor_factory(lambda cmd: result_factory(False, returncode=3, stderr="tracker down"))
        )
        with pytest.raises(TransferError) as exc:
            await engine.fetch(str(published), tmp_path / "dl" / "img-1")
        assert exc.value.code == "TRANSFER_ERROR"
        assert exc.value.context["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_fetch_missing_output(self, tmp_path, recording_executor_factory):
        published = tmp_path / "img-1.torrent"
        published.write_bytes(b"d4:infoe")
        engine = TransferEngine(executor=recording_executor_factory())
        with pytest.raises(TransferError):
            await engine.fetch(str(published), tmp_path / "dl" / "img-1")


class TestImageConverter:
    """Promotion into the image store."""

    @pytest.fixture
    def node(self, tmp_path):
        return NodeConfig(store_dir=str(tmp_path / "store"), owner=None, group=None, mode=0o640)

    @pytest.mark.asyncio
    async def test_same_format_is_copied(self, tmp_path, node):
        src = tmp_path / "download"
        src.write_bytes(b"raw image")
        dest = tmp_path / "store" / "abc"
        converter = ImageConverter(node)
        await converter.promote(src, dest, "raw")
        assert dest.read_bytes() == b"raw image"
        assert stat.S_IMODE(os.stat(dest).st_mode) == 0o640
        assert not partial_path_for(dest).exists()

    @pytest.mark.asyncio
    async def test_qemu_img_convert(self, tmp_path, node, recording_executor_factory, result_factory):
        src = tmp_path / "download"
        src.write_bytes(b"qcow2 image")
        dest = tmp_path / "store" / "abc"

        def handler(command):
            Path(command[-1]).write_bytes(b"converted")
            return result_factory(True)

        executor = recording_executor_factory(handler)
        await ImageConverter(node, executor).promote(src, dest, "qcow2")
        (cmd,) = executor.commands
        assert cmd[:6] == ["/usr/bin/qemu-img", "convert", "-f", "qcow2", "-O", "raw"]
        assert cmd[-1] == str(partial_path_for(dest))
        assert dest.read_bytes() == b"converted"

    @pytest.mark.asyncio
    async def test_conversion_failure_leaves_no_destination(self, tmp_path, node, recording_executor_factory, result_factory):
        src = tmp_path / "download"
        src.write_bytes(b"qcow2 image")
        dest = tmp_path / "store" / "abc"

        def handler(command):
            Path(command[-1]).write_bytes(b"half")
            return result_factory(False, stderr="qemu-img: Could not open")

        with pytest.raises(ConversionError):
            await ImageConverter(node, recording_executor_factory(handler)).promote(src, dest, "qcow2")
        assert not dest.exists()
        assert not partial_path_for(dest).exists()

    @pytest.mark.asyncio
    async def test_unknown_owner(self, tmp_path, recording_executor_factory):
        node = NodeConfig(owner="no-such-user-prestage", group=None)
        src = tmp_path / "download"
        src.write_bytes(b"raw image")
        dest = tmp_path / "store" / "abc"
        with pytest.raises(ConversionError):
            await ImageConverter(node, recording_executor_factory()).promote(src, dest, "raw")
        assert not dest.exists()
