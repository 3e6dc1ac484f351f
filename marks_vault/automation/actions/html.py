"""Netscape bookmark file rendering."""
from __future__ import annotations

import html
from typing import Iterable, List

from marks_vault.automation.ports import BookmarkNode

HEADER = (
    "<!DOCTYPE NETSCAPE-Bookmark-file-1>\n"
    "<!-- This is an automatically generated file.\n"
    "     It will be read and overwritten.\n"
    "     DO NOT EDIT! -->\n"
    '<META HTTP-EQUIV="Content-Type" CONTENT="text/html; charset=UTF-8">\n'
    "<TITLE>Bookmarks</TITLE>\n"
    "<H1>Bookmarks</H1>\n"
)


def _escape(text: str) -> str:
    return html.escape(text or "", quote=True)


def _render(nodes: Iterable[BookmarkNode], level: int, out: List[str]) -> None:
    indent = "    " * level
    for node in nodes:
        if node.is_folder:
            out.append(f"{indent}<DT><H3>{_escape(node.title)}</H3>\n")
            out.append(f"{indent}<DL><p>\n")
            _render(node.children or [], level + 1, out)
            out.append(f"{indent}</DL><p>\n")
        elif node.url:
            add_date = f' ADD_DATE="{node.date_added // 1000}"' if node.date_added else ""
            out.append(f'{indent}<DT><A HREF="{_escape(node.url)}"{add_date}>{_escape(node.title)}</A>\n')


def render_netscape_html(nodes: Iterable[BookmarkNode]) -> str:
    out = [HEADER, "<DL><p>\n"]
    _render(nodes, 1, out)
    out.append("</DL><p>\n")
    return "".join(out)


__all__ = ["render_netscape_html"]
