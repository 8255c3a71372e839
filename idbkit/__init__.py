"""
idbkit — lossless reader for legacy disassembler database containers.

Architecture:
    Container:  .idb (32-bit) / .i64 (64-bit) file, header-addressed sections
    Sections:   ID0 (B-tree), ID1 (byte flags), NAM (names), TIL, SEG, ID2
    ID0:        paged B-tree rebuilt into an ordered list of (key, value) pairs

Parsing never interprets key/value contents. It guarantees byte-exact,
ordered recovery and reports every byte it could not account for.
"""

__version__ = "0.1.0"

# ID0 page size used when the ID0 header does not provide a usable one
DEFAULT_PAGE_SIZE = 0x2000
MIN_PAGE_SIZE = 64  # the ID0 header page itself is 64 bytes

# ID1/NAM page size ("VA*" headers never store it)
ID1_PAGE_SIZE = 0x2000

# Safety limits
MAX_FILE_SIZE = 2 * 1024 * 1024 * 1024  # 2 GiB max file size for parse_file
MAX_SECTION_SIZE = 1024 * 1024 * 1024   # 1 GiB max decompressed section
MAX_PAGES = 1_000_000                   # max ID0 pages walked per parse
MAX_ENTRIES = 50_000_000                # max ID0 entries collected per parse

# Default config file location
CONFIG_DIR_NAME = ".idbkit"
CONFIG_FILE_NAME = "parser.toml"
