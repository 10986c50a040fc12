import sys
from datetime import datetime

from rich import print
from rich.markup import escape

from sysvapi import (
    InvalidImageError,
    UnexpectedEOFError,
    format_listing_line,
    open_filesystem,
)
from sysvfs import INODE_FT_DIR

VERSION = "0.0.1"

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_FATAL = 2

commands = []


def command(name, description, usage=""):
    def decorator(func):
        commands.append({'name': name, 'func': func, 'description': description, 'usage': usage})
        return func
    return decorator


def handle_help():
    print(f"TI/LMI unixtool v{VERSION}\n")
    print(escape("Usage: unixtool <command> <image file> [parameters]...\n"))
    print(" Commands:\n")
    print("   help       Prints this information")
    for cmd in sorted(commands, key=lambda x: x['name']):
        print(f"   {cmd['name']:<10} {cmd['description']}")
        if cmd['usage']:
            print(f"                Parameters: {escape(cmd['usage'])}")
    print("\n Options:\n")
    print("   -v, --verbose  Trace path and block resolution on stderr")
    return EXIT_OK


def not_found():
    print("unixtool: No such file or directory (in image).")
    return EXIT_NOT_FOUND


def require_path(name, path):
    if not path.startswith("/"):
        print(f"unixtool: {name}: Invalid path")
        return False
    return True


@command('ls', 'Lists the given directory', '<directory>')
def handle_ls(fs, args):
    if not args:
        print("unixtool: ls: directory path is required")
        return EXIT_FATAL
    path = args[0]
    if not require_path("ls", path):
        return EXIT_FATAL

    try:
        entries = fs.listdir(path)
    except (FileNotFoundError, NotADirectoryError):
        return not_found()

    print(f"{escape(path)}:")
    for item in entries:
        line = format_listing_line(item)
        if item.inode.type == INODE_FT_DIR:
            prefix = line[:len(line) - len(item.display_name)]
            line = f"{escape(prefix)}[bold blue]{escape(item.display_name)}[/bold blue]"
        else:
            line = escape(line)
        print(line)
    return EXIT_OK


@command('read', 'Copy path from image file to destination', '<source path> <destination>')
def handle_read(fs, args):
    if not args:
        print("unixtool: read: source path is required")
        return EXIT_FATAL
    if len(args) < 2:
        print("unixtool: read: destination path is required")
        return EXIT_FATAL
    path, destination = args[0], args[1]
    if not require_path("read", path):
        return EXIT_FATAL

    try:
        inode = fs.resolve_path(path)
    except (FileNotFoundError, NotADirectoryError):
        return not_found()
    if not inode.is_regular_file:
        print("unixtool: No such file or directory (in image, file read).")
        return EXIT_NOT_FOUND

    print(f"Copying {inode.size} bytes")
    with open(destination, "wb") as f:
        written = fs.extract(inode, f)
    print(f"Wrote {written} of {inode.size} bytes")
    return EXIT_OK


@command('cat', 'Writes a file from the image to standard output', '<file>')
def handle_cat(fs, args):
    if not args:
        print("unixtool: cat: file path is required")
        return EXIT_FATAL
    if not require_path("cat", args[0]):
        return EXIT_FATAL

    try:
        fs.extract_path(args[0], sys.stdout.buffer)
    except (FileNotFoundError, NotADirectoryError):
        return not_found()
    sys.stdout.buffer.flush()
    return EXIT_OK


@command('stat', 'Shows the inode behind a path', '<path>')
def handle_stat(fs, args):
    if not args:
        print("unixtool: stat: path is required")
        return EXIT_FATAL
    if not require_path("stat", args[0]):
        return EXIT_FATAL

    try:
        st = fs.stat(args[0])
    except (FileNotFoundError, NotADirectoryError):
        return not_found()

    print(f"  Inode: {st['inode']}")
    print(f"   Type: {st['type']}  Mode: {st['mode']:04o}  Links: {st['links_count']}")
    print(f"    Uid: {st['uid']:06o}  Gid: {st['gid']:06o}")
    print(f"   Size: {st['size']}")
    for label in ("atime", "mtime", "ctime"):
        print(f"  {label.capitalize()}: {datetime.fromtimestamp(st[label]):%Y-%m-%d %H:%M:%S}")
    addrs = " ".join(str(a) for a in st["addr"])
    print(f"  Addrs: {addrs}")
    return EXIT_OK


@command('info', 'Shows the superblock summary')
def handle_info(fs, args):
    info = fs.statfs()
    print(f"Filesystem name: {escape(info['fname'])}")
    print(f"Pack name:       {escape(info['fpack'])}")
    print(f"Volume blocks:   {info['fsize']}")
    print(f"I-list blocks:   {info['isize']}")
    print(f"Free blocks:     {info['tfree']}")
    print(f"Free inodes:     {info['tinode']}")
    print(f"Type:            {info['type']}")
    print(f"Magic:           0x{info['magic']:08X}")
    print(f"Last update:     {datetime.fromtimestamp(info['time']):%Y-%m-%d %H:%M:%S}")
    return EXIT_OK


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    verbose = any(arg in ("-v", "--verbose") for arg in argv)
    argv = [arg for arg in argv if arg not in ("-v", "--verbose")]

    if not argv or argv[0] in ("help", "-?"):
        return handle_help()

    if len(argv) < 2:
        print('unixtool: Band image file name is required; See "unixtool help" for usage information.')
        return EXIT_FATAL

    command_name, image_path, args = argv[0], argv[1], argv[2:]
    cmd_entry = next((c for c in commands if c['name'] == command_name), None)
    if cmd_entry is None:
        print('unixtool: Unknown parameters; See "unixtool help" for usage information.')
        return EXIT_FATAL

    try:
        fs = open_filesystem(image_path, verbose=verbose)
    except InvalidImageError as e:
        print(f"unixtool: {escape(str(e))}")
        return EXIT_FATAL
    except OSError as e:
        print(f"unixtool: disk open(): {escape(str(e))}")
        return EXIT_FATAL

    with fs:
        try:
            return cmd_entry['func'](fs, args)
        except UnexpectedEOFError:
            print("unixtool: Unexpected end-of-file")
            return EXIT_FATAL
        except OSError as e:
            print(f"unixtool: {escape(str(e))}")
            return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
