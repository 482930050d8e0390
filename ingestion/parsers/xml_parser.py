"""
XML parser selecting repeating record elements by XPath
"""

import xml.etree.ElementTree as ET
from typing import Any, AsyncIterator, BinaryIO, Dict, List, Optional

from core.cancellation import CancellationToken, check_cancelled
from ingestion.parsers.base import ImportParser
from ingestion.rows import ParsedRow
from schemas.profile import FormatConfig
import logging

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "ns"


def local_name(tag: str) -> str:
    """Strip a {namespace} qualifier from a tag or attribute name"""
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def select_records(root: ET.Element, xpath: Optional[str], namespaces: Dict[str, str]) -> List[ET.Element]:
    """
    Evaluate the record path against the document.

    ElementTree only evaluates relative paths, so absolute forms are
    rewritten: //Rec becomes .//Rec and /Root/Rec is matched against the
    root element first.

    Raises:
        SyntaxError: For expressions ElementTree cannot compile
    """
    if not xpath or not xpath.strip():
        return list(root)

    path = xpath.strip()

    if path.startswith("//"):
        matches = root.findall("." + path, namespaces)
        # .//X never considers the root element itself
        if _matches_step(root, path[2:], namespaces):
            matches.insert(0, root)
        return matches

    if path.startswith("/"):
        steps = path[1:].split("/", 1)
        if not _matches_step(root, steps[0], namespaces):
            return []
        if len(steps) == 1 or not steps[1]:
            return [root]
        return root.findall("./" + steps[1], namespaces)

    return root.findall(path, namespaces)


def _matches_step(element: ET.Element, step: str, namespaces: Dict[str, str]) -> bool:
    """Whether a single name step (no predicates) names the given element"""
    if not step or "/" in step or "[" in step:
        return False
    if step == "*":
        return True
    if ":" in step:
        prefix, name = step.split(":", 1)
        uri = namespaces.get(prefix)
        if uri is None:
            raise SyntaxError(f"prefix {prefix!r} not found in prefix map")
        return element.tag == f"{{{uri}}}{name}"
    return element.tag == step


def element_text(element: ET.Element) -> str:
    return "".join(element.itertext())


def element_columns(element: ET.Element) -> Dict[str, Any]:
    columns: Dict[str, Any] = {}

    for name, value in element.attrib.items():
        columns[f"@{local_name(name)}"] = value

    for child in element:
        if len(child):
            columns[local_name(child.tag)] = ET.tostring(child, encoding="unicode").strip()
        else:
            columns[local_name(child.tag)] = element_text(child)

    if not columns:
        columns["value"] = element_text(element)

    return columns


class XmlParser(ImportParser):
    """
    Parse an XML document into one row per record element.

    Features:
    - Default records are the direct children of the root
    - Attributes become @name columns, children become columns by local name
    - Optional namespace bound to the ns prefix for record paths
    - Malformed XML and invalid paths each yield one descriptive error row
    """

    format_name = "XML"

    async def parse(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken] = None
    ) -> AsyncIterator[ParsedRow]:
        check_cancelled(cancel, "parse")

        try:
            root = ET.parse(stream).getroot()
        except ET.ParseError as e:
            logger.error(f"XML parse error: {e}")
            yield ParsedRow.error(0, f"XML parse error: {e}")
            return

        namespaces = {NAMESPACE_PREFIX: config.xml_namespace} if config.xml_namespace else {}

        try:
            records = select_records(root, config.record_element, namespaces)
        except Exception as e:
            # ElementPath reports malformed predicates as SyntaxError, KeyError or TypeError
            logger.error(f"XPath error '{config.record_element}': {e}")
            yield ParsedRow.error(0, f"XPath error '{config.record_element}': {e}")
            return

        if not records:
            logger.warning(f"XPath '{config.record_element or '/*/*'}' matched no elements")
            return

        for index, element in enumerate(records, start=1):
            check_cancelled(cancel, "parse")
            yield ParsedRow(line_number=index, columns=element_columns(element))

        logger.debug(f"XML parse complete: {len(records)} rows")
