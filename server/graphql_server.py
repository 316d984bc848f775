#!/usr/bin/env python3
"""
GraphQL Schema Language Server Protocol Implementation

Go to definition, hover and outline for .graphql schema files.
One file at a time, rescanned on every request, no schema validation.
Your schema is only as documented as its triple quotes.

MIT/Apache 2.0 License
"""

import re
import json
import sys
import logging
import argparse
from types import MappingProxyType
from typing import BinaryIO, Dict, List, NamedTuple, Optional, Any

__version__ = '1.0.0'

logger = logging.getLogger(__name__)

# ============================================================================
# GraphQL Language Definitions
# From the GraphQL specification (October 2021 edition)
# ============================================================================

# Built-in scalars - these exist in every schema whether you declare them or not
BUILTIN_SCALARS = MappingProxyType({
    'String': 'The String scalar type represents textual data, represented as '
              'UTF-8 character sequences.',
    'Int': 'The Int scalar type represents non-fractional signed whole numeric '
           'values. Int can represent values between -(2^31) and 2^31 - 1.',
    'Float': 'The Float scalar type represents signed double-precision fractional '
             'values as specified by IEEE 754.',
    'Boolean': 'The Boolean scalar type represents true or false.',
    'ID': 'The ID scalar type represents a unique identifier, often used to '
          'refetch an object or as the key for a cache. The ID type is serialized '
          'in the same way as a String.',
})

# LSP SymbolKind values for each top-level keyword
SYMBOL_KIND_CLASS = 5
SYMBOL_KINDS = MappingProxyType({
    'type': SYMBOL_KIND_CLASS,
    'enum': 10,       # Enum
    'union': 11,      # Interface
    'interface': 11,  # Interface
    'scalar': 14,     # Constant
    'input': 23,      # Struct
})

# Kinds whose body is a { ... } block
BRACED_KINDS = frozenset(['type', 'interface', 'input', 'enum'])

DEFINITION_PATTERN = re.compile(
    r'^(type|enum|union|interface|scalar|input)\s+'  # Keyword
    r'([A-Za-z0-9_]+)'                                 # Name
    r'(?=[^A-Za-z0-9_]|$)'                             # Must end on a word boundary
)
WORD_PATTERN = re.compile(r'[A-Za-z0-9_]+')

# Whitespace as editors trim it, byte-order mark included
TRIM_PATTERN = re.compile(r'^[\s\ufeff]+|[\s\ufeff]+$')

BLOCK_COMMENT = '"""'
LINE_COMMENT = '#'
UNION_MEMBER = '|'

TEXT_DOCUMENT_SYNC_FULL = 1

# JSON-RPC error codes
INTERNAL_ERROR = -32603


def trim(line: str) -> str:
    return TRIM_PATTERN.sub('', line)


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units, the unit of LSP character positions."""
    return len(text.encode('utf-16-le')) // 2


class Definition(NamedTuple):
    """A top-level declaration: kind keyword, name, line and doc comment."""
    kind: str
    name: str
    line: int
    text: str
    documentation: Optional[str]


class _ScanState:
    """Line state carried through parse_definitions."""

    def __init__(self):
        self.pending_doc: List[str] = []
        self.in_block_comment = False

    def take_documentation(self) -> Optional[str]:
        doc = '\n'.join(self.pending_doc) if self.pending_doc else None
        self.pending_doc = []
        return doc


def parse_definitions(text: str) -> List[Definition]:
    """
    Scan a schema document for top-level definitions.

    Comments directly above a definition become its documentation:
    - Triple quotes open or close a block; a line holding two is self-contained
    - # lines are collected as-is
    - Any other non-blank line throws the pending comment away
    - Blank lines are ignored, so a gap does not detach a comment

    An unterminated block comment eats the rest of the document.
    """
    definitions = []
    state = _ScanState()

    for line_num, line in enumerate(text.split('\n')):
        trimmed = trim(line)

        if trimmed.startswith(BLOCK_COMMENT):
            state.pending_doc.append(line)
            if trimmed.count(BLOCK_COMMENT) != 2:
                state.in_block_comment = not state.in_block_comment
            continue

        if state.in_block_comment or trimmed.startswith(LINE_COMMENT):
            state.pending_doc.append(line)
            continue

        match = DEFINITION_PATTERN.match(line)
        if match:
            definitions.append(Definition(
                kind=match.group(1),
                name=match.group(2),
                line=line_num,
                text=trimmed,
                documentation=state.take_documentation(),
            ))
        elif trimmed:
            state.pending_doc = []

    return definitions


def get_word_at_offset(text: str, offset: int) -> Optional[str]:
    """Get the identifier touching offset. Both ends of a word count as inside it."""
    for match in WORD_PATTERN.finditer(text):
        if match.start() <= offset <= match.end():
            return match.group(0)
    return None


def find_definition(definitions: List[Definition], name: str) -> Optional[Definition]:
    """First definition with exactly this name."""
    for definition in definitions:
        if definition.name == name:
            return definition
    return None


def expand_definition(text: str, definition: Definition) -> str:
    """
    Get the full source of a definition for display.

    Braced kinds run until their braces balance, unions run while the
    next line continues with |, scalars are a single line. Unbalanced
    input just stops at the end of the document.
    """
    lines = text.split('\n')
    body = [lines[definition.line]]
    end_line = definition.line + 1

    if definition.kind in BRACED_KINDS:
        depth = body[0].count('{') - body[0].count('}')
        while end_line < len(lines) and depth > 0:
            line = lines[end_line]
            body.append(line)
            depth += line.count('{') - line.count('}')
            end_line += 1

    elif definition.kind == 'union':
        while end_line < len(lines) and trim(lines[end_line]).startswith(UNION_MEMBER):
            body.append(lines[end_line])
            end_line += 1

    return '\n'.join(body)


def line_range(definition: Definition) -> dict:
    """LSP range covering the definition's introducer line."""
    return {
        'start': {'line': definition.line, 'character': 0},
        'end': {'line': definition.line, 'character': utf16_length(definition.text)}
    }


class TextDocument:
    """
    An open document, as last sent by the client.

    Full sync only - every change replaces the whole text.
    """

    def __init__(self, uri: str, text: str, version: Optional[int] = None):
        self.uri = uri
        self.text = text
        self.version = version
        self._line_offsets: Optional[List[int]] = None

    def get_text(self) -> str:
        return self.text

    def update(self, text: str, version: Optional[int] = None):
        self.text = text
        self.version = version
        self._line_offsets = None

    @property
    def line_offsets(self) -> List[int]:
        """Start offset of every line. Lines end at \\n, \\r\\n or \\r."""
        if self._line_offsets is None:
            offsets = [0]
            text = self.text
            i = 0
            while i < len(text):
                ch = text[i]
                if ch == '\r' or ch == '\n':
                    if ch == '\r' and i + 1 < len(text) and text[i + 1] == '\n':
                        i += 1
                    offsets.append(i + 1)
                i += 1
            self._line_offsets = offsets
        return self._line_offsets

    def offset_at(self, line: int, character: int) -> int:
        """
        Convert an LSP position to an offset, clamping to the document and line.

        character counts UTF-16 code units, so astral characters count twice.
        """
        offsets = self.line_offsets
        if line >= len(offsets):
            return len(self.text)
        if line < 0:
            return 0

        line_start = offsets[line]
        if character <= 0:
            return line_start

        next_line_start = offsets[line + 1] if line + 1 < len(offsets) else len(self.text)
        offset = line_start
        units = 0
        while offset < next_line_start and units < character:
            units += 2 if ord(self.text[offset]) > 0xFFFF else 1
            offset += 1
        # Stay on this line, not on its terminator
        while offset > line_start and self.text[offset - 1] in '\r\n':
            offset -= 1
        return offset


class GraphQLLanguageServer:
    """
    GraphQL Language Server

    Three features, one file at a time. Every request rescans the
    current text, so there is nothing to invalidate when you type.
    """

    def __init__(self, stdin: Optional[BinaryIO] = None, stdout: Optional[BinaryIO] = None):
        self.documents: Dict[str, TextDocument] = {}
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.running = True

    def send_message(self, message: dict):
        """Send a JSON-RPC message to the client."""
        content = json.dumps(message).encode('utf-8')
        header = f'Content-Length: {len(content)}\r\n\r\n'.encode('ascii')
        self.stdout.write(header + content)
        self.stdout.flush()

    def send_response(self, request_id: Any, result: Any):
        """Send a response to a request."""
        self.send_message({
            'jsonrpc': '2.0',
            'id': request_id,
            'result': result
        })

    def send_error(self, request_id: Any, code: int, message: str):
        """Send an error response."""
        self.send_message({
            'jsonrpc': '2.0',
            'id': request_id,
            'error': {'code': code, 'message': message}
        })

    def read_message(self) -> Optional[dict]:
        """Read a JSON-RPC message from stdin. None means the stream is done."""
        headers = {}
        while True:
            line = self.stdin.readline()
            if not line:
                return None
            line = line.decode('ascii', errors='replace').strip()
            if not line:
                break
            if ':' in line:
                key, value = line.split(':', 1)
                headers[key.strip().lower()] = value.strip()

        try:
            content_length = int(headers.get('content-length', 0))
        except ValueError:
            logger.error('Bad Content-Length header: %r', headers.get('content-length'))
            return None
        if content_length <= 0:
            logger.error('Message without a body, headers: %r', headers)
            return None

        content = self.stdin.read(content_length)
        if len(content) < content_length:
            logger.error('Stream ended mid-message (%d of %d bytes)', len(content), content_length)
            return None
        try:
            return json.loads(content.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.exception('Could not decode message body')
            return None

    def get_document(self, uri: str) -> Optional[TextDocument]:
        return self.documents.get(uri)

    def word_at(self, params: dict) -> Optional[str]:
        """Word under the cursor of a text document position request."""
        doc = self.get_document(params['textDocument']['uri'])
        if not doc:
            return None
        position = params['position']
        offset = doc.offset_at(position['line'], position['character'])
        return get_word_at_offset(doc.get_text(), offset)

    def handle_initialize(self, params: dict) -> dict:
        """Handle initialize request."""
        client = params.get('clientInfo') or {}
        logger.info('Initializing for %s', client.get('name', 'unknown client'))
        return {
            'capabilities': {
                'textDocumentSync': TEXT_DOCUMENT_SYNC_FULL,
                'definitionProvider': True,
                'hoverProvider': True,
                'documentSymbolProvider': True,
            },
            'serverInfo': {
                'name': 'GraphQL Language Server',
                'version': __version__
            }
        }

    def handle_definition(self, params: dict) -> Optional[dict]:
        """Go to definition - same file only."""
        word = self.word_at(params)
        if not word:
            return None

        uri = params['textDocument']['uri']
        definitions = parse_definitions(self.documents[uri].get_text())
        definition = find_definition(definitions, word)
        if not definition:
            return None

        return {
            'uri': uri,
            'range': line_range(definition)
        }

    def handle_hover(self, params: dict) -> Optional[dict]:
        """Show the definition source, with its doc comment, in a graphql block."""
        word = self.word_at(params)
        if not word:
            return None

        # Built-ins win, even over a schema that redeclares them
        if word in BUILTIN_SCALARS:
            return {
                'contents': {
                    'kind': 'markdown',
                    'value': f'```graphql\nscalar {word}\n```\n\n{BUILTIN_SCALARS[word]}'
                }
            }

        text = self.documents[params['textDocument']['uri']].get_text()
        definition = find_definition(parse_definitions(text), word)
        if not definition:
            return None

        value = '```graphql\n'
        if definition.documentation:
            value += definition.documentation + '\n'
        value += expand_definition(text, definition) + '\n```'

        return {
            'contents': {
                'kind': 'markdown',
                'value': value
            }
        }

    def handle_document_symbol(self, params: dict) -> List[dict]:
        """Provide document symbols for the outline."""
        doc = self.get_document(params['textDocument']['uri'])
        if not doc:
            return []

        symbols = []
        for definition in parse_definitions(doc.get_text()):
            symbols.append({
                'name': definition.name,
                'kind': SYMBOL_KINDS.get(definition.kind, SYMBOL_KIND_CLASS),
                'range': line_range(definition),
                'selectionRange': line_range(definition)
            })
        return symbols

    def handle_did_open(self, params: dict):
        """Handle textDocument/didOpen."""
        item = params['textDocument']
        self.documents[item['uri']] = TextDocument(item['uri'], item['text'], item.get('version'))
        logger.debug('Opened %s', item['uri'])

    def handle_did_change(self, params: dict):
        """Handle textDocument/didChange."""
        uri = params['textDocument']['uri']
        changes = params.get('contentChanges', [])
        if not changes:
            return
        # Full sync mode - the last change holds the whole content
        text = changes[-1].get('text', '')
        version = params['textDocument'].get('version')
        doc = self.documents.get(uri)
        if doc:
            doc.update(text, version)
        else:
            self.documents[uri] = TextDocument(uri, text, version)

    def handle_did_close(self, params: dict):
        """Handle textDocument/didClose."""
        uri = params['textDocument']['uri']
        self.documents.pop(uri, None)
        logger.debug('Closed %s', uri)

    def dispatch(self, method: str, params: dict, request_id: Any):
        """Route one message to its handler, answering requests."""
        if method == 'initialize':
            self.send_response(request_id, self.handle_initialize(params))

        elif method == 'initialized':
            pass  # No response needed

        elif method == 'shutdown':
            self.send_response(request_id, None)

        elif method == 'exit':
            self.running = False

        elif method == 'textDocument/didOpen':
            self.handle_did_open(params)

        elif method == 'textDocument/didChange':
            self.handle_did_change(params)

        elif method == 'textDocument/didClose':
            self.handle_did_close(params)

        elif method == 'textDocument/definition':
            self.send_response(request_id, self.handle_definition(params))

        elif method == 'textDocument/hover':
            self.send_response(request_id, self.handle_hover(params))

        elif method == 'textDocument/documentSymbol':
            self.send_response(request_id, self.handle_document_symbol(params))

        elif request_id is not None:
            # Unknown method with ID - send empty response
            self.send_response(request_id, None)

    def run(self):
        """Main server loop."""
        while self.running:
            message = self.read_message()
            if message is None:
                break
            if not isinstance(message, dict):
                # Batches and bare values are not supported
                logger.error('Ignoring non-object message: %.200r', message)
                continue

            method = message.get('method', '')
            params = message.get('params') or {}
            request_id = message.get('id')
            logger.debug('<- %s (id=%r)', method, request_id)

            try:
                self.dispatch(method, params, request_id)
            except Exception as e:
                logger.exception('Failed to handle %s', method)
                if request_id is not None:
                    self.send_error(request_id, INTERNAL_ERROR, str(e))


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog='graphql-lsp',
        description='GraphQL schema language server (LSP over stdio).'
    )
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging threshold (default: WARNING)')
    parser.add_argument('--log-file', help='Write logs here instead of stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    args = parser.parse_args(argv)

    # stdout belongs to the protocol
    destination = {'filename': args.log_file} if args.log_file else {'stream': sys.stderr}
    logging.basicConfig(
        level=args.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        **destination
    )

    server = GraphQLLanguageServer()
    server.run()


if __name__ == '__main__':
    main()
