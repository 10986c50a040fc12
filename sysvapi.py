import io
import os
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

from rich.console import Console

from byteorder import read_be32
from sysvfs import (
    ADDRS_PER_BLOCK,
    BLOCK_SIZE,
    DIRENT_SIZE,
    DIRENTS_PER_BLOCK,
    DIRSIZ,
    INODE_FT_BLK,
    INODE_FT_CHAR,
    INODE_FT_DIR,
    INODE_FT_FIFO,
    INODE_SIZE,
    INODE_TABLE_OFFSET,
    MAX_INDIRECTION,
    NDIRECT,
    ROOT_INODE,
    SUPERBLOCK_BLOCK,
    SUPERBLOCK_MAGIC,
    DirEntry,
    Inode,
    SuperBlock,
)

# Logical blocks reachable through the inode address slots
MAX_LOGICAL_BLOCKS = NDIRECT + sum(ADDRS_PER_BLOCK ** level for level in range(1, MAX_INDIRECTION + 1))

TYPE_GLYPHS = {
    INODE_FT_DIR: "d",
    INODE_FT_CHAR: "c",
    INODE_FT_BLK: "b",
    INODE_FT_FIFO: "p",
}

PERMISSION_BITS = [
    (0o400, "r"), (0o200, "w"), (0o100, "x"),
    (0o040, "r"), (0o020, "w"), (0o010, "x"),
    (0o004, "r"), (0o002, "w"), (0o001, "x"),
]


class InvalidImageError(ValueError):
    """Block 1 does not hold a SysV superblock"""


class NameTooLongError(FileNotFoundError):
    """Path component longer than a directory entry name field"""


class NotARegularFileError(FileNotFoundError):
    pass


class UnsupportedIndirectionError(OSError):
    """Logical block needs a third level of indirect blocks"""


class UnexpectedEOFError(EOFError):
    """Address map ran out before the inode size was reached"""


@dataclass
class ListingEntry:
    """Directory entry together with the inode it points at"""

    entry: DirEntry
    inode_num: int
    inode: Inode

    @property
    def name(self) -> str:
        return self.entry.name

    @property
    def display_name(self) -> str:
        return self.entry.display_name


def indirection_path(logical_block: int) -> Tuple[int, List[int]]:
    """
    Map a logical block index to the inode address slot holding it and the
    entry offsets to follow through each level of indirect blocks.
    """
    if logical_block < 0:
        raise ValueError(f"Invalid logical block {logical_block}")
    if logical_block < NDIRECT:
        return logical_block, []

    index = logical_block - NDIRECT
    span = ADDRS_PER_BLOCK
    for level in range(1, MAX_INDIRECTION + 1):
        if index < span:
            offsets = []
            for _ in range(level):
                offsets.append(index % ADDRS_PER_BLOCK)
                index //= ADDRS_PER_BLOCK
            offsets.reverse()
            return NDIRECT + level - 1, offsets
        index -= span
        span *= ADDRS_PER_BLOCK

    raise UnsupportedIndirectionError(
        f"Further indirection required for logical block {logical_block}"
    )


def scan_block(block_data: bytes) -> List[DirEntry]:
    """Directory entries of one block, up to the first unused (inode 0) slot"""
    entries = []
    for x in range(DIRENTS_PER_BLOCK):
        entry = DirEntry.unpack(block_data, x * DIRENT_SIZE)
        if entry.inode_num == 0:
            break
        entries.append(entry)
    return entries


def format_mode(inode: Inode) -> str:
    type_char = TYPE_GLYPHS.get(inode.type, "-")
    perms = "".join(ch if inode.mode & bit else "-" for bit, ch in PERMISSION_BITS)
    return type_char + perms


def format_time(timestamp: int) -> str:
    mod_time = datetime.fromtimestamp(timestamp)
    return f"{mod_time:%b} {mod_time.day:2d}  {mod_time.year}"


def format_listing_line(item: ListingEntry) -> str:
    inode = item.inode
    return (
        f"{format_mode(inode)}  {inode.nlink:2d} {inode.uid:06o}  {inode.gid:06o}  "
        f"{inode.size:7d} {format_time(inode.mtime)} {item.display_name}"
    )


class FileSystem:
    """Read-only view of a byte-swapped SysV filesystem image"""

    def __init__(self, image_path: str, verbose: bool = False):
        self.image_path = image_path
        self.image_file: Optional[BinaryIO] = None
        self.superblock: Optional[SuperBlock] = None
        self.console = Console(stderr=True, quiet=not verbose, highlight=False)

        self._load_filesystem()

    def __enter__(self) -> "FileSystem":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close_filesystem()

    def _load_filesystem(self):
        """Open the image and check its superblock"""
        if not os.path.exists(self.image_path):
            raise FileNotFoundError(f"Filesystem image {self.image_path} not found")

        self.image_file = open(self.image_path, "rb")
        try:
            self.superblock = self.load_superblock()
        except BaseException:
            self.close_filesystem()
            raise

    def _trace(self, message: str):
        self.console.print(message, markup=False)

    def close_filesystem(self):
        """Close filesystem"""
        if self.image_file:
            self.image_file.close()
            self.image_file = None

    # Block device

    def read_block(self, block_num: int) -> bytes:
        """Read one 1024-byte block from the image"""
        if block_num < 0:
            raise OSError(f"Invalid block number {block_num}")
        self.image_file.seek(block_num * BLOCK_SIZE)
        data = self.image_file.read(BLOCK_SIZE)
        if len(data) != BLOCK_SIZE:
            raise OSError(
                f"Could not read block {block_num}: got {len(data)} of {BLOCK_SIZE} bytes"
            )
        return data

    def load_superblock(self) -> SuperBlock:
        superblock = SuperBlock.unpack(self.read_block(SUPERBLOCK_BLOCK))
        if not superblock.has_valid_magic():
            raise InvalidImageError(
                f"Bad superblock magic: Expected 0x{SUPERBLOCK_MAGIC:08X}, "
                f"got 0x{superblock.host_magic:08X}"
            )
        return superblock

    # Inodes

    def read_inode(self, inode_num: int) -> Inode:
        """Decode inode by number; nothing is cached"""
        inode_offset = INODE_TABLE_OFFSET + inode_num * INODE_SIZE
        if inode_offset < 0:
            raise OSError(f"Invalid inode number {inode_num}")

        self.image_file.seek(inode_offset)
        inode_data = self.image_file.read(INODE_SIZE)
        if len(inode_data) != INODE_SIZE:
            raise OSError(f"Could not read inode {inode_num}")

        return Inode.unpack(inode_data)

    # Block resolver

    def resolve_file_block(self, inode: Inode, logical_block: int) -> Optional[int]:
        """
        Physical block number of a file's logical block, or None past the end
        of the address map. Indirect blocks are read fresh on every call.
        """
        slot, offsets = indirection_path(logical_block)
        block = inode.addr[slot]
        chain = [str(block)]

        for offset in offsets:
            if block == 0:
                return None
            table = self.read_block(block)
            block = read_be32(table, offset * 4)
            chain[-1] += f"({offset})"
            chain.append(str(block))

        if block == 0:
            return None

        chain[-1] = f"disk_block_read({block})"
        self._trace(f"inode_block_read({logical_block}) => " + " => ".join(chain))
        return block

    def read_file_block(self, inode: Inode, logical_block: int) -> Optional[bytes]:
        block = self.resolve_file_block(inode, logical_block)
        if block is None:
            return None
        return self.read_block(block)

    # Directories

    def iter_directory(self, dir_inode: Inode) -> Iterator[DirEntry]:
        """
        Walk directory blocks in order. A block whose scan ends before the
        64th slot is the last one read.
        """
        logical_block = 0
        while True:
            block_data = self.read_file_block(dir_inode, logical_block)
            if block_data is None:
                return
            entries = scan_block(block_data)
            yield from entries
            if len(entries) < DIRENTS_PER_BLOCK:
                return
            logical_block += 1

    def lookup(self, dir_inode: Inode, name: Union[str, bytes]) -> int:
        """Find name in directory, return inode number"""
        component = os.fsencode(name)
        if len(component) > DIRSIZ:
            raise NameTooLongError(f"No such file or directory: {os.fsdecode(component)}")

        for entry in self.iter_directory(dir_inode):
            if entry.matches(component):
                return entry.inode_num

        raise FileNotFoundError(f"No such file or directory: {os.fsdecode(component)}")

    def list_all(self, dir_inode: Inode) -> List[ListingEntry]:
        return [
            ListingEntry(entry, entry.inode_num, self.read_inode(entry.inode_num))
            for entry in self.iter_directory(dir_inode)
        ]

    # Paths

    def resolve_path_number(self, path: str) -> Tuple[int, Inode]:
        """Resolve path to (inode number, inode), starting at the root directory"""
        components = [comp for comp in path.split("/") if comp]

        inode_num = ROOT_INODE
        inode = self.read_inode(ROOT_INODE)

        for i, component in enumerate(components):
            if not inode.is_dir:
                raise NotADirectoryError(f"Not a directory: {components[i - 1] if i else '/'}")
            self._trace(f"pathpart: {component}")
            inode_num = self.lookup(inode, component)
            inode = self.read_inode(inode_num)

        return inode_num, inode

    def resolve_path(self, path: str) -> Inode:
        return self.resolve_path_number(path)[1]

    # Extraction

    def extract(self, inode: Inode, sink) -> int:
        """Copy file content to sink, truncating the last block to the inode size"""
        written = 0
        logical_block = 0

        while written < inode.size:
            chunk_size = min(BLOCK_SIZE, inode.size - written)
            block_data = self.read_file_block(inode, logical_block)
            if block_data is None:
                raise UnexpectedEOFError(
                    f"Unexpected end-of-file at block {logical_block} "
                    f"({written} of {inode.size} bytes)"
                )
            sink.write(block_data[:chunk_size])
            written += chunk_size
            logical_block += 1

        return written

    def extract_path(self, path: str, sink) -> int:
        inode = self.resolve_path(path)
        if not inode.is_regular_file:
            raise NotARegularFileError(f"Not a regular file: {path}")
        return self.extract(inode, sink)

    def read_file(self, path: str) -> bytes:
        """Whole content of a regular file"""
        buffer = io.BytesIO()
        self.extract_path(path, buffer)
        return buffer.getvalue()

    # Listing and metadata

    def listdir(self, path: str) -> List[ListingEntry]:
        dir_inode = self.resolve_path(path)
        if not dir_inode.is_dir:
            raise NotADirectoryError(f"Not a directory: {path}")
        return self.list_all(dir_inode)

    def readdir(self, path: str) -> List[str]:
        """List directory contents"""
        return [item.name for item in self.listdir(path)]

    def stat(self, path: str) -> Dict[str, Union[int, List[int]]]:
        """Get file/directory metadata"""
        inode_num, inode = self.resolve_path_number(path)

        return {
            "inode": inode_num,
            "mode": inode.mode,
            "type": inode.type,
            "size": inode.size,
            "uid": inode.uid,
            "gid": inode.gid,
            "links_count": inode.nlink,
            "atime": inode.atime,
            "mtime": inode.mtime,
            "ctime": inode.ctime,
            "addr": list(inode.addr),
        }

    def statfs(self) -> Dict[str, Union[int, str]]:
        """Decoded superblock summary"""
        sb = self.superblock
        return {
            "isize": sb.isize,
            "fsize": sb.fsize,
            "tfree": sb.tfree,
            "tinode": sb.tinode,
            "fname": sb.volume_name,
            "fpack": sb.pack_name,
            "type": sb.type,
            "time": sb.time,
            "magic": sb.host_magic,
        }


def open_filesystem(image_path: str, verbose: bool = False) -> FileSystem:
    """Open an image; every call returns an independent handle"""
    return FileSystem(image_path, verbose=verbose)
