from __future__ import annotations

from contextlib import contextmanager
import fcntl
import os
from pathlib import Path
import tempfile
import time
from typing import ContextManager, Iterator, Mapping, Protocol
import xml.etree.ElementTree as ET

from hafailover.core.errors import ConfigurationError


InterfaceMap = dict[str, dict[str, str]]


class ConfigHandle(Protocol):
    # Narrow view of the gateway configuration store used by the failover run.
    last_error: str | None

    def reload(self) -> None:
        ...

    def interfaces(self) -> InterfaceMap:
        ...

    def interface_device(self, key: str) -> str:
        ...

    def gateway_items(self) -> list[dict[str, str]]:
        ...

    def locked(self) -> ContextManager[None]:
        ...

    def write(self, description: str, interfaces: Mapping[str, Mapping[str, str]]) -> None:
        ...


class XmlConfigHandle:
    """File-backed handle over an OPNsense-style ``config.xml``.

    Only the ``<interfaces>`` section is ever rewritten; everything else in
    the document is preserved as loaded.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._tree: ET.ElementTree | None = None
        self.last_error: str | None = None

    def reload(self) -> None:
        self._tree = self._parse()

    def _parse(self) -> ET.ElementTree:
        try:
            tree = ET.parse(self._path)
        except (OSError, ET.ParseError) as exc:
            self.last_error = str(exc)
            raise ConfigurationError(f"cannot load {self._path}: {exc}") from exc
        self.last_error = None
        return tree

    def _document(self) -> ET.ElementTree:
        if self._tree is None:
            self._tree = self._parse()
        return self._tree

    def interfaces(self) -> InterfaceMap:
        # Flat settings only; nested blocks such as dhcp6 options are left to the store.
        section = self._document().getroot().find("interfaces")
        if section is None:
            return {}
        return {
            entry.tag: {child.tag: (child.text or "") for child in _leaf_children(entry)}
            for entry in section
        }

    def interface_device(self, key: str) -> str:
        # Map a logical key (wan, opt1) to its kernel device; unknown keys pass through.
        entry = self.interfaces().get(key, {})
        return entry.get("if") or key

    def gateway_items(self) -> list[dict[str, str]]:
        section = self._document().getroot().find("gateways")
        if section is None:
            return []
        return [
            {child.tag: (child.text or "") for child in item}
            for item in section.findall("gateway_item")
        ]

    @contextmanager
    def locked(self) -> Iterator[None]:
        # Serialize writers with the same advisory lock the config store uses.
        try:
            handle = open(self._path, "a")
        except OSError as exc:
            self.last_error = str(exc)
            raise ConfigurationError(f"cannot lock {self._path}: {exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    def write(self, description: str, interfaces: Mapping[str, Mapping[str, str]]) -> None:
        tree = self._document()
        root = tree.getroot()
        section = root.find("interfaces")
        if section is None:
            section = ET.SubElement(root, "interfaces")
        for key, values in interfaces.items():
            entry = section.find(key)
            if entry is None:
                entry = ET.SubElement(section, key)
            _merge_entry(entry, values)
        self._stamp_revision(root, description)
        self._persist(tree)

    def _stamp_revision(self, root: ET.Element, description: str) -> None:
        revision = root.find("revision")
        if revision is None:
            revision = ET.SubElement(root, "revision")
        for tag, text in (("time", f"{time.time():.4f}"), ("description", description)):
            node = revision.find(tag)
            if node is None:
                node = ET.SubElement(revision, tag)
            node.text = text

    def _persist(self, tree: ET.ElementTree) -> None:
        directory = self._path.parent
        fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".xml", dir=directory)
        try:
            with os.fdopen(fd, "wb") as handle:
                tree.write(handle, encoding="UTF-8", xml_declaration=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            self.last_error = str(exc)
            Path(tmp_name).unlink(missing_ok=True)
            raise ConfigurationError(f"failed to write {self._path}: {exc}") from exc
        self.last_error = None


def _leaf_children(entry: ET.Element) -> list[ET.Element]:
    return [child for child in entry if len(child) == 0]


def _merge_entry(entry: ET.Element, values: Mapping[str, str]) -> None:
    # A flat setting missing from ``values`` is unset; attributes and nested blocks stay as loaded.
    for child in _leaf_children(entry):
        if child.tag not in values:
            entry.remove(child)
    for tag, text in values.items():
        node = entry.find(tag)
        if node is None:
            node = ET.SubElement(entry, tag)
        node.text = str(text)
