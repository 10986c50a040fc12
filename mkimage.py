import struct
import time
from typing import Dict, List, Optional, Tuple

import attr

from byteorder import swap32
from sysvapi import MAX_LOGICAL_BLOCKS
from sysvfs import (
    ADDRS_PER_BLOCK,
    BLOCK_SIZE,
    DIRSIZ,
    DOUBLE_INDIRECT_SLOT,
    FS_TYPE_1K,
    INODE_FT_DIR,
    INODE_FT_FILE,
    INODE_SIZE,
    INODE_TABLE_OFFSET,
    NADDR,
    NDIRECT,
    NICFREE,
    NICINOD,
    ROOT_INODE,
    SINGLE_INDIRECT_SLOT,
    SUPERBLOCK_BLOCK,
    SUPERBLOCK_MAGIC,
    DirEntry,
    Inode,
    SuperBlock,
)


@attr.s(auto_attribs=True)
class Node:
    inode_num: int
    type: int
    mode: int
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    content: bytes = b""
    size: Optional[int] = None  # overrides len(content) when set
    nlink: int = 1
    entries: List[Tuple[bytes, int]] = attr.Factory(list)


def pack_block_table(blocks: List[int]) -> bytes:
    """Indirect block: big-endian 32-bit block numbers, zero padded"""
    return struct.pack(f">{len(blocks)}I", *blocks).ljust(BLOCK_SIZE, b"\x00")


class ImageBuilder:
    """
    Lays out a fresh SysV image in memory: boot block, superblock, inode
    table, then data and indirect blocks. Used to produce test images.
    """

    def __init__(self, inode_blocks: int = 4, fname: bytes = b"unix", fpack: bytes = b"band0",
                 magic: Optional[int] = None, timestamp: Optional[int] = None):
        self.isize = 2 + inode_blocks
        self.max_inode = (self.isize * BLOCK_SIZE - INODE_TABLE_OFFSET) // INODE_SIZE - 1
        self.fname = fname
        self.fpack = fpack
        self.magic = swap32(SUPERBLOCK_MAGIC) if magic is None else magic
        self.timestamp = int(time.time()) if timestamp is None else timestamp

        self.nodes: Dict[int, Node] = {}
        self.raw_blocks: Dict[int, bytes] = {}
        self.next_block = self.isize

        root = self._new_node(INODE_FT_DIR, 0o755, inode_num=ROOT_INODE)
        root.nlink = 2
        root.entries.extend([(b".", ROOT_INODE), (b"..", ROOT_INODE)])

    def _new_node(self, inode_type: int, mode: int, inode_num: Optional[int] = None, **meta) -> Node:
        if inode_num is None:
            inode_num = ROOT_INODE
            while inode_num in self.nodes:
                inode_num += 1
        if inode_num in self.nodes:
            raise ValueError(f"Inode {inode_num} already in use")
        if not 1 <= inode_num <= self.max_inode:
            raise ValueError(f"Inode {inode_num} does not fit the inode table")

        meta.setdefault("mtime", self.timestamp)
        node = Node(inode_num=inode_num, type=inode_type, mode=mode, **meta)
        self.nodes[inode_num] = node
        return node

    def _add_entry(self, parent: int, name, inode_num: int):
        name_bytes = name.encode() if isinstance(name, str) else name
        if len(name_bytes) > DIRSIZ:
            raise ValueError(f"Name too long: {name!r}")
        parent_node = self.nodes[parent]
        if parent_node.type != INODE_FT_DIR:
            raise ValueError(f"Inode {parent} is not a directory")
        parent_node.entries.append((name_bytes, inode_num))

    def mkdir(self, parent: int, name, mode: int = 0o755, **meta) -> int:
        node = self._new_node(INODE_FT_DIR, mode, **meta)
        node.nlink = 2
        node.entries.extend([(b".", node.inode_num), (b"..", parent)])
        self._add_entry(parent, name, node.inode_num)
        self.nodes[parent].nlink += 1
        return node.inode_num

    def add_file(self, parent: int, name, content: bytes, mode: int = 0o644, **meta) -> int:
        node = self._new_node(INODE_FT_FILE, mode, content=content, **meta)
        self._add_entry(parent, name, node.inode_num)
        return node.inode_num

    def add_node(self, parent: int, name, inode_type: int, mode: int = 0o644, **meta) -> int:
        """Inode without data blocks (FIFO and device special files)"""
        node = self._new_node(inode_type, mode, **meta)
        self._add_entry(parent, name, node.inode_num)
        return node.inode_num

    def link(self, parent: int, name, inode_num: int):
        """Extra directory entry for an existing inode"""
        self._add_entry(parent, name, inode_num)
        self.nodes[inode_num].nlink += 1

    def allocate_block(self, data: bytes = b"") -> int:
        """Reserve a block with raw content, e.g. a hand-made indirect table"""
        block_num = self.next_block
        self.next_block += 1
        self.raw_blocks[block_num] = bytes(data).ljust(BLOCK_SIZE, b"\x00")
        return block_num

    def _place_data(self, content: bytes) -> List[int]:
        """Write content into fresh blocks and return the 13 inode addresses"""
        block_count = (len(content) + BLOCK_SIZE - 1) // BLOCK_SIZE
        if block_count > MAX_LOGICAL_BLOCKS:
            raise ValueError(f"Content needs {block_count} blocks, more than two indirection levels hold")

        data_blocks = [
            self.allocate_block(content[i * BLOCK_SIZE:(i + 1) * BLOCK_SIZE])
            for i in range(block_count)
        ]

        addr = [0] * NADDR
        addr[:min(NDIRECT, block_count)] = data_blocks[:NDIRECT]
        rest = data_blocks[NDIRECT:]

        if rest:
            addr[SINGLE_INDIRECT_SLOT] = self.allocate_block(pack_block_table(rest[:ADDRS_PER_BLOCK]))
            rest = rest[ADDRS_PER_BLOCK:]

        if rest:
            tables = [
                self.allocate_block(pack_block_table(rest[i:i + ADDRS_PER_BLOCK]))
                for i in range(0, len(rest), ADDRS_PER_BLOCK)
            ]
            addr[DOUBLE_INDIRECT_SLOT] = self.allocate_block(pack_block_table(tables))

        return addr

    def _node_inode(self, node: Node) -> Inode:
        if node.type == INODE_FT_DIR:
            content = b"".join(DirEntry(num, name).pack() for name, num in node.entries)
        else:
            content = node.content
        addr = self._place_data(content)
        return Inode(
            mode=node.mode,
            type=node.type,
            nlink=node.nlink,
            uid=node.uid,
            gid=node.gid,
            size=len(content) if node.size is None else node.size,
            addr=addr,
            atime=node.mtime,
            mtime=node.mtime,
            ctime=node.mtime,
        )

    def create_superblock(self, fsize: int) -> SuperBlock:
        return SuperBlock(
            isize=self.isize,
            fsize=fsize,
            nfree=0,
            free=[0] * NICFREE,
            ninode=0,
            inode=[0] * NICINOD,
            flock=0,
            ilock=0,
            fmod=0,
            readonly=0,
            time=self.timestamp,
            dinfo=[0] * 4,
            tfree=0,
            tinode=self.max_inode - len(self.nodes),
            fname=self.fname,
            fpack=self.fpack,
            magic=self.magic,
            type=FS_TYPE_1K,
        )

    def build(self) -> bytes:
        """Lay out all nodes; the builder is spent afterwards"""
        inodes = {num: self._node_inode(node) for num, node in sorted(self.nodes.items())}

        fsize = self.next_block
        image = bytearray(fsize * BLOCK_SIZE)

        sb_offset = SUPERBLOCK_BLOCK * BLOCK_SIZE
        image[sb_offset:sb_offset + BLOCK_SIZE] = self.create_superblock(fsize).pack()

        for inode_num, inode in inodes.items():
            offset = INODE_TABLE_OFFSET + inode_num * INODE_SIZE
            image[offset:offset + INODE_SIZE] = inode.pack()

        for block_num, data in self.raw_blocks.items():
            image[block_num * BLOCK_SIZE:(block_num + 1) * BLOCK_SIZE] = data

        return bytes(image)

    def save(self, image_path: str):
        with open(image_path, "wb") as f:
            f.write(self.build())


def build_sample_image(image_path: str):
    """Small tree for trying the tool by hand"""
    builder = ImageBuilder()
    bin_dir = builder.mkdir(ROOT_INODE, "bin")
    etc_dir = builder.mkdir(ROOT_INODE, "etc")
    builder.add_file(bin_dir, "sh", b"\x60\x00" * 3000, mode=0o755)
    builder.add_file(etc_dir, "passwd", b"root::0:0:Super-User:/:/bin/sh\n")
    builder.add_file(etc_dir, "motd", b"UNIX System V\n" * 1200)
    builder.save(image_path)


def main():
    image_path = "sysv.img"
    build_sample_image(image_path)


if __name__ == "__main__":
    main()
