import os
import struct
from typing import List

import attr

from byteorder import read_be16, read_be24, swap16, swap32

# Geometry
BLOCK_SIZE = 1024
SUPERBLOCK_BLOCK = 1
SUPERBLOCK_SIZE = 1024
INODE_TABLE_OFFSET = 0x7C0  # inode 1 lands at 0x800, the start of block 2
INODE_SIZE = 0x40
ROOT_INODE = 2

# Block addressing
NADDR = 13
NDIRECT = 10
SINGLE_INDIRECT_SLOT = 10
DOUBLE_INDIRECT_SLOT = 11
ADDRS_PER_BLOCK = BLOCK_SIZE // 4
MAX_INDIRECTION = 2

# Directories
DIRSIZ = 14
DIRENT_SIZE = 16
DIRENTS_PER_BLOCK = BLOCK_SIZE // DIRENT_SIZE

# Stored magic as a little-endian host reads it (on-disk bytes FD 18 7E 20)
SUPERBLOCK_MAGIC = 0x207E18FD
FS_TYPE_1K = 2

# Inode file types
INODE_FT_FIFO = 1
INODE_FT_CHAR = 2
INODE_FT_DIR = 4
INODE_FT_BLK = 6
INODE_FT_FILE = 8

NICFREE = 50
NICINOD = 100

SUPERBLOCK_FORMAT = f">HIH{NICFREE}IH{NICINOD}HBBBBI4HIH6s6s572sII"
INODE_FORMAT = ">HHHHI40sIII"
DIRENT_FORMAT = f">H{DIRSIZ}s"

assert struct.calcsize(SUPERBLOCK_FORMAT) == SUPERBLOCK_SIZE
assert struct.calcsize(INODE_FORMAT) == INODE_SIZE
assert struct.calcsize(DIRENT_FORMAT) == DIRENT_SIZE


@attr.s(auto_attribs=True)
class SuperBlock:
    isize: int       # first block after the i-list
    fsize: int       # blocks in the volume
    nfree: int
    free: List[int]
    ninode: int
    inode: List[int]
    flock: int
    ilock: int
    fmod: int
    readonly: int
    time: int
    dinfo: List[int]
    tfree: int
    tinode: int
    fname: bytes
    fpack: bytes
    magic: int
    type: int
    fill: bytes = attr.ib(default=b"\x00" * 572, repr=False)

    def pack(self) -> bytes:
        return struct.pack(
            SUPERBLOCK_FORMAT,
            self.isize,
            self.fsize,
            self.nfree,
            *self.free,
            self.ninode,
            *self.inode,
            self.flock,
            self.ilock,
            self.fmod,
            self.readonly,
            self.time,
            *self.dinfo,
            self.tfree,
            self.tinode,
            self.fname,
            self.fpack,
            self.fill,
            self.magic,
            self.type,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "SuperBlock":
        fields = list(struct.unpack(SUPERBLOCK_FORMAT, data[:SUPERBLOCK_SIZE]))
        isize, fsize, nfree = fields[0:3]
        free = fields[3:3 + NICFREE]
        pos = 3 + NICFREE
        ninode = fields[pos]
        inode = fields[pos + 1:pos + 1 + NICINOD]
        pos += 1 + NICINOD
        flock, ilock, fmod, readonly, time = fields[pos:pos + 5]
        dinfo = fields[pos + 5:pos + 9]
        tfree, tinode, fname, fpack, fill, magic, fs_type = fields[pos + 9:]
        return cls(
            isize=isize,
            fsize=fsize,
            nfree=nfree,
            free=free,
            ninode=ninode,
            inode=inode,
            flock=flock,
            ilock=ilock,
            fmod=fmod,
            readonly=readonly,
            time=time,
            dinfo=dinfo,
            tfree=tfree,
            tinode=tinode,
            fname=fname,
            fpack=fpack,
            magic=magic,
            type=fs_type,
            fill=fill,
        )

    def has_valid_magic(self) -> bool:
        return self.host_magic == SUPERBLOCK_MAGIC

    @property
    def host_magic(self) -> int:
        """Magic word as a little-endian host reads it"""
        return swap32(self.magic)

    @property
    def volume_name(self) -> str:
        return self.fname.split(b"\x00", 1)[0].decode("ascii", errors="replace")

    @property
    def pack_name(self) -> str:
        return self.fpack.split(b"\x00", 1)[0].decode("ascii", errors="replace")


@attr.s(auto_attribs=True)
class Inode:
    mode: int   # permission bits
    type: int   # INODE_FT_*
    nlink: int
    uid: int
    gid: int
    size: int
    addr: List[int] = attr.ib(factory=lambda: [0] * NADDR)
    atime: int = 0
    mtime: int = 0
    ctime: int = 0

    @property
    def is_dir(self) -> bool:
        return self.type == INODE_FT_DIR

    @property
    def is_regular_file(self) -> bool:
        return self.type == INODE_FT_FILE

    def pack(self) -> bytes:
        mode_word = ((self.type & 0x0F) << 12) | (self.mode & 0o7777)
        addr_bytes = b"".join(a.to_bytes(3, "big") for a in self.addr)
        return struct.pack(
            INODE_FORMAT,
            mode_word,
            self.nlink,
            self.uid,
            self.gid,
            self.size,
            addr_bytes.ljust(40, b"\x00"),
            self.atime,
            self.mtime,
            self.ctime,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        (mode_word, nlink, uid, gid, size,
         addr_bytes, atime, mtime, ctime) = struct.unpack(INODE_FORMAT, data[:INODE_SIZE])

        # Type nibble and permission bits share the word; split them in host order
        raw = swap16(mode_word)
        mode = ((raw >> 8) & 0xFF) | ((raw & 0x0F) << 8)
        inode_type = (raw >> 4) & 0x0F

        addr = [read_be24(addr_bytes, i * 3) for i in range(NADDR)]
        return cls(
            mode=mode,
            type=inode_type,
            nlink=nlink,
            uid=uid,
            gid=gid,
            size=size,
            addr=addr,
            atime=atime,
            mtime=mtime,
            ctime=ctime,
        )


@attr.s(auto_attribs=True)
class DirEntry:
    """Directory entry: inode number and a fixed 14-byte name field"""

    inode_num: int
    raw_name: bytes

    @property
    def name_bytes(self) -> bytes:
        return self.raw_name.split(b"\x00", 1)[0]

    @property
    def name(self) -> str:
        return os.fsdecode(self.name_bytes)

    @property
    def display_name(self) -> str:
        """Printable name; bytes that are not UTF-8 are shown as \\xNN escapes"""
        return self.name_bytes.decode("utf-8", errors="backslashreplace")

    def matches(self, component: bytes) -> bool:
        return self.name_bytes == component[:DIRSIZ]

    def pack(self) -> bytes:
        return struct.pack(DIRENT_FORMAT, self.inode_num, self.raw_name[:DIRSIZ])

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "DirEntry":
        inode_num = read_be16(data, offset)
        raw_name = bytes(data[offset + 2:offset + DIRENT_SIZE])
        return cls(inode_num, raw_name)
