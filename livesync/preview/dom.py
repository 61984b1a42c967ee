"""In-memory document tree used by the reconciler.

Mirrors the parts of the browser DOM the live merge relies on: element,
text and comment nodes, attributes, an identity key (the ``id`` attribute)
and the live state of form controls, which can drift from the markup that
created them (``value``, ``checked``, ``selected``, ``selected_index``).
"""
import uuid
from enum import Enum
from html import escape
from html.parser import HTMLParser
from typing import Callable, Dict, Iterator, List, Optional
from urllib.parse import urljoin


class NodeKind(Enum):
    ELEMENT = 1
    TEXT = 3
    COMMENT = 8


VOID_ELEMENTS = {
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input', 'link',
    'meta', 'param', 'source', 'track', 'wbr'
}

# start tag -> open elements it implicitly closes
IMPLICIT_CLOSE = {
    'li': {'li'},
    'option': {'option'},
    'optgroup': {'option', 'optgroup'},
    'p': {'p'},
    'tr': {'tr', 'td', 'th'},
    'td': {'td', 'th'},
    'th': {'td', 'th'},
    'dt': {'dt', 'dd'},
    'dd': {'dt', 'dd'},
}

TOGGLE_INPUT_TYPES = {'checkbox', 'radio'}


class Node:
    def __init__(self, kind: NodeKind, tag: str = '',
                 attributes: Optional[Dict[str, str]] = None, data: str = ''):
        self.kind = kind
        self.tag = tag.lower()
        self.attributes: Dict[str, str] = dict(attributes or {})
        self.data = data
        self.children: List['Node'] = []
        self.parent: Optional['Node'] = None
        # live form state
        self.value: Optional[str] = None
        self.checked = False
        self.selected = False
        self.selected_index = -1
        # reference a hot-swapped stylesheet was originally loaded from
        self.original_href: Optional[str] = None
        self._load_listeners: List[Callable[[], None]] = []

    @classmethod
    def element(cls, tag: str, attributes: Optional[Dict[str, str]] = None) -> 'Node':
        return cls(NodeKind.ELEMENT, tag, attributes)

    @classmethod
    def text(cls, data: str) -> 'Node':
        return cls(NodeKind.TEXT, data=data)

    @classmethod
    def comment(cls, data: str) -> 'Node':
        return cls(NodeKind.COMMENT, data=data)

    def __repr__(self):
        if self.is_element:
            return f"<Node {self.tag} {self.attributes}>"
        return f"<Node {self.kind.name.lower()} {self.data!r}>"

    @property
    def is_element(self) -> bool:
        return self.kind is NodeKind.ELEMENT

    @property
    def key(self) -> Optional[str]:
        """Identity key used to pair live and incoming nodes"""
        if not self.is_element:
            return None
        return self.attributes.get('id') or None

    def same_type(self, other: 'Node') -> bool:
        if self.kind is not other.kind:
            return False
        return not self.is_element or self.tag.lower() == other.tag.lower()

    @property
    def is_text_entry(self) -> bool:
        if self.tag == 'textarea':
            return True
        return self.tag == 'input' and self.input_type not in TOGGLE_INPUT_TYPES

    @property
    def input_type(self) -> str:
        return self.attributes.get('type', 'text').lower()

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    def has_attribute(self, name: str) -> bool:
        return name in self.attributes

    def set_attribute(self, name: str, value: str):
        self.attributes[name] = value

    def remove_attribute(self, name: str):
        self.attributes.pop(name, None)

    @property
    def text_content(self) -> str:
        if not self.is_element:
            return self.data
        return ''.join(child.text_content for child in self.children)

    @property
    def default_value(self) -> Optional[str]:
        """Value the markup gives a text entry control"""
        if self.tag == 'textarea':
            return self.text_content
        return self.attributes.get('value')

    def append_child(self, child: 'Node') -> 'Node':
        return self.insert_child(len(self.children), child)

    def insert_child(self, index: int, child: 'Node') -> 'Node':
        if child.parent is self:
            old_index = self.children.index(child)
            if old_index == index:
                return child
            if old_index < index:
                index -= 1
        if child.parent is not None:
            child.parent.remove_child(child)
        self.children.insert(index, child)
        child.parent = self
        return child

    def remove_child(self, child: 'Node') -> 'Node':
        self.children.remove(child)
        child.parent = None
        return child

    def detach(self):
        if self.parent is not None:
            self.parent.remove_child(self)

    def iter(self) -> Iterator['Node']:
        """This node and its descendants, document order"""
        yield self
        for child in self.children:
            yield from child.iter()

    def find_all(self, tag: str) -> List['Node']:
        tag = tag.lower()
        return [n for n in self.iter() if n.is_element and n.tag == tag]

    def find(self, tag: str) -> Optional['Node']:
        found = self.find_all(tag)
        return found[0] if found else None

    def options(self) -> List['Node']:
        """Options of a select, including those inside optgroups"""
        return [n for n in self.iter() if n is not self and n.is_element and n.tag == 'option']

    def reset_form_state(self):
        """Initialise live state from markup, as a browser does on parse"""
        if self.tag == 'input':
            self.value = self.attributes.get('value', '')
            self.checked = 'checked' in self.attributes
        elif self.tag == 'textarea':
            self.value = self.text_content
        elif self.tag == 'option':
            self.selected = 'selected' in self.attributes
        elif self.tag == 'select':
            update_selected_index(self)

    def add_load_listener(self, listener: Callable[[], None]):
        self._load_listeners.append(listener)

    def dispatch_load(self):
        """Report that the resource this node references has loaded"""
        listeners, self._load_listeners = self._load_listeners, []
        for listener in listeners:
            listener()

    def to_html(self) -> str:
        if self.kind is NodeKind.TEXT:
            return escape(self.data, quote=False)
        if self.kind is NodeKind.COMMENT:
            return f"<!--{self.data}-->"
        attrs = ''.join(
            f' {name}' if value == '' else f' {name}="{escape(value)}"'
            for name, value in self.attributes.items()
        )
        if self.tag in VOID_ELEMENTS:
            return f"<{self.tag}{attrs}>"
        inner = ''.join(child.to_html() for child in self.children)
        return f"<{self.tag}{attrs}>{inner}</{self.tag}>"


def update_selected_index(select: Node):
    """Recompute a select's selected index from its options' live state"""
    options = select.options()
    selected = [i for i, option in enumerate(options) if option.selected]
    if select.has_attribute('multiple'):
        select.selected_index = selected[0] if selected else -1
        return
    if selected:
        index = selected[0]
    else:
        index = 0 if options else -1
    for i, option in enumerate(options):
        option.selected = i == index
    select.selected_index = index


class TreeBuilder(HTMLParser):
    """Builds a Node tree from markup with forgiving tag handling"""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = Node.element('#fragment')
        self._stack: List[Node] = [self.root]

    @property
    def current(self) -> Node:
        return self._stack[-1]

    def handle_starttag(self, tag, attrs):
        tag = tag.lower()
        closes = IMPLICIT_CLOSE.get(tag)
        if closes and len(self._stack) > 1 and self.current.tag in closes:
            self._stack.pop()
        node = Node.element(tag, {name.lower(): value or '' for name, value in attrs})
        self.current.append_child(node)
        if tag not in VOID_ELEMENTS:
            self._stack.append(node)

    def handle_startendtag(self, tag, attrs):
        node = Node.element(tag, {name.lower(): value or '' for name, value in attrs})
        self.current.append_child(node)

    def handle_endtag(self, tag):
        tag = tag.lower()
        for i in range(len(self._stack) - 1, 0, -1):
            if self._stack[i].tag == tag:
                del self._stack[i:]
                return

    def handle_data(self, data):
        if data:
            self.current.append_child(Node.text(data))

    def handle_comment(self, data):
        self.current.append_child(Node.comment(data))


def parse_fragment(html: str) -> Node:
    builder = TreeBuilder()
    builder.feed(html)
    builder.close()
    nodes = list(builder.root.iter())
    # selects last, their index depends on the options' state
    for node in nodes:
        if node.tag != 'select':
            node.reset_form_state()
    for node in nodes:
        if node.tag == 'select':
            node.reset_form_state()
    return builder.root


def _content_nodes(container: Node) -> List[Node]:
    nodes = []
    for child in container.children:
        if child.is_element and child.tag == 'html':
            nodes.extend(_content_nodes(child))
        elif child.is_element and child.tag == 'head':
            continue
        else:
            nodes.append(child)
    return nodes


class Document:
    def __init__(self, html_element: Node, url: Optional[str] = None):
        self.root = html_element
        self.url = url
        self.head = html_element.find('head')
        self.body = html_element.find('body')
        # temporary in-memory resources, like browser blob URLs
        self.resources: Dict[str, str] = {}

    @classmethod
    def parse(cls, html: str, url: Optional[str] = None) -> 'Document':
        """Parse markup into a document with exactly one head and one body"""
        fragment = parse_fragment(html)
        head = fragment.find('head') or Node.element('head')
        body = fragment.find('body')
        if body is None:
            body = Node.element('body')
            for node in _content_nodes(fragment):
                body.append_child(node)
        head.detach()
        body.detach()

        html_element = Node.element('html')
        html_element.append_child(head)
        html_element.append_child(body)
        return cls(html_element, url)

    def resolve_url(self, href: str) -> str:
        return urljoin(self.url, href) if self.url else href

    def stylesheets(self) -> List[Node]:
        return [
            node for node in self.root.find_all('link')
            if 'stylesheet' in node.attributes.get('rel', '').lower().split()
        ]

    def create_object_url(self, content: str) -> str:
        url = f"blob:livesync/{uuid.uuid4()}"
        self.resources[url] = content
        return url

    def revoke_object_url(self, url: str):
        self.resources.pop(url, None)

    def to_html(self) -> str:
        return self.root.to_html()
