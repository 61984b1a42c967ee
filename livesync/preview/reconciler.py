import asyncio
import logging
from typing import Dict, Optional, Set

from .dom import Document, Node, NodeKind, update_selected_index

logger = logging.getLogger(__name__)


class Reconciler:
    """Merges pushed updates into a live document.

    Markup is merged node by node so that live state the markup does not
    mention (input values, checked boxes, selections) survives. Stylesheets
    are swapped in place through a temporary resource.
    """

    def __init__(self, document: Document, release_delay: float = 1.0):
        self.document = document
        self.release_delay = release_delay
        self._keyed: Dict[str, Node] = {}
        self._claimed: Set[int] = set()

    def apply_markup(self, fragment_html: str) -> Node:
        """Merge a body fragment into the live body"""
        incoming = Document.parse(fragment_html).body
        live = self.document.body

        self._keyed = {}
        for node in live.iter():
            if node is not live and node.key and node.key not in self._keyed:
                self._keyed[node.key] = node
        self._claimed = set()

        # the pushed fragment has no <body> tag of its own, its attributes stay
        self._morph_children(live, incoming)

        # keyed nodes nobody claimed are gone from the new markup
        for node in self._keyed.values():
            if id(node) not in self._claimed:
                node.detach()
        self._keyed = {}
        self._claimed = set()
        return live

    def apply_style(self, url: str, css_text: str) -> Optional[str]:
        """Hot-swap the stylesheet loaded from url; returns its temporary reference"""
        for node in self.document.stylesheets():
            if not self._references(node, url):
                continue
            previous = node.get_attribute('href') if node.original_href else None
            resource = self.document.create_object_url(css_text)
            node.original_href = url
            node.add_load_listener(lambda: self._schedule_release(resource))
            node.set_attribute('href', resource)
            if previous:
                self.document.revoke_object_url(previous)
            return resource
        logger.debug(f"No stylesheet matches {url}")
        return None

    def _references(self, node: Node, url: str) -> bool:
        # the current href is a temporary resource once a sheet was swapped
        if node.original_href is not None:
            return node.original_href == url
        href = node.get_attribute('href')
        if href is None:
            return False
        return url in (href, self.document.resolve_url(href))

    def _schedule_release(self, resource: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.document.revoke_object_url(resource)
            return
        loop.call_later(self.release_delay, self.document.revoke_object_url, resource)

    def _claim(self, node: Node):
        self._claimed.add(id(node))

    def _is_claimed(self, node: Node) -> bool:
        return id(node) in self._claimed

    def _morph(self, live: Node, incoming: Node):
        if live.kind is NodeKind.ELEMENT:
            self._morph_element(live, incoming)
        elif live.data != incoming.data:
            live.data = incoming.data

    def _morph_element(self, live: Node, incoming: Node):
        previous_default = live.default_value
        had_checked = live.has_attribute('checked')
        had_selected = live.has_attribute('selected')

        self._sync_attributes(live, incoming)

        if live.tag == 'textarea':
            self._sync_textarea(live, incoming, previous_default)
            return
        self._morph_children(live, incoming)

        if live.tag == 'input':
            new_default = incoming.get_attribute('value')
            if new_default is not None and new_default != previous_default:
                live.value = new_default
            if incoming.has_attribute('checked') != had_checked:
                live.checked = incoming.has_attribute('checked')
        elif live.tag == 'option':
            if incoming.has_attribute('selected') != had_selected:
                live.selected = incoming.has_attribute('selected')
        elif live.tag == 'select':
            update_selected_index(live)

    def _sync_attributes(self, live: Node, incoming: Node):
        for name, value in incoming.attributes.items():
            if live.attributes.get(name) != value:
                live.set_attribute(name, value)
        for name in list(live.attributes):
            if name not in incoming.attributes:
                live.remove_attribute(name)

    def _sync_textarea(self, live: Node, incoming: Node, previous_default: Optional[str]):
        new_default = incoming.text_content
        if new_default == previous_default:
            return
        for child in list(live.children):
            live.remove_child(child)
        if new_default:
            live.append_child(Node.text(new_default))
        live.value = new_default

    def _find_positional(self, live_parent: Node, incoming: Node, position: int) -> Optional[Node]:
        """First unkeyed live sibling at or after position compatible with incoming"""
        for candidate in live_parent.children[position:]:
            if candidate.key or self._is_claimed(candidate):
                continue
            if candidate.same_type(incoming):
                return candidate
        return None

    def _find_keyed(self, incoming: Node, live_parent: Node) -> Optional[Node]:
        candidate = self._keyed.get(incoming.key)
        if candidate is None or self._is_claimed(candidate):
            return None
        if not candidate.same_type(incoming):
            return None
        # never move a node into its own subtree
        ancestor = live_parent
        while ancestor is not None:
            if ancestor is candidate:
                return None
            ancestor = ancestor.parent
        return candidate

    def _discard_unkeyed(self, live_parent: Node, start: int, stop: Node):
        """Drop unkeyed nodes from start up to the stop node"""
        index = start
        while index < len(live_parent.children):
            node = live_parent.children[index]
            if node is stop:
                return
            if node.key or self._is_claimed(node):
                index += 1
            else:
                live_parent.remove_child(node)

    def _morph_children(self, live_parent: Node, incoming_parent: Node):
        position = 0
        for incoming in list(incoming_parent.children):
            if incoming.key:
                match = self._find_keyed(incoming, live_parent)
            else:
                match = self._find_positional(live_parent, incoming, position)
                if match is not None:
                    self._discard_unkeyed(live_parent, position, match)

            if match is not None:
                self._claim(match)
                live_parent.insert_child(position, match)
                self._morph(match, incoming)
            else:
                live_parent.insert_child(position, incoming)
                self._adopt_keyed(incoming)
            position += 1

        # leftovers: unkeyed ones go now, keyed ones may still be claimed elsewhere
        self._discard_unkeyed(live_parent, position, None)

    def _adopt_keyed(self, added: Node):
        """Swap keyed descendants of an added node for their live counterparts"""
        for child in list(added.children):
            match = self._find_keyed(child, added) if child.key else None
            if match is not None:
                self._claim(match)
                index = added.children.index(child)
                added.remove_child(child)
                added.insert_child(index, match)
                self._morph(match, child)
            else:
                self._adopt_keyed(child)
