# loop.py
import os, fcntl, struct, ctypes
from abc import ABC, abstractmethod

from KDump.kcore import MountFailed, UnmountFailed

def create_loop_info64(
    lo_offset: int,
    lo_sizelimit: int,
    lo_flags: int,
    lo_file_name: str
):
    """
    struct loop_info64 {
        uint64_t lo_device;           /* ioctl r/o */
        uint64_t lo_inode;            /* ioctl r/o */
        uint64_t lo_rdevice;          /* ioctl r/o */
        uint64_t lo_offset;
        uint64_t lo_sizelimit;        /* bytes, 0 == max available */
        uint32_t lo_number;           /* ioctl r/o */
        uint32_t lo_encrypt_type;
        uint32_t lo_encrypt_key_size; /* ioctl w/o */
        uint32_t lo_flags;
        uint8_t  lo_file_name[LO_NAME_SIZE];
        uint8_t  lo_crypt_name[LO_NAME_SIZE];
        uint8_t  lo_encrypt_key[LO_KEY_SIZE]; /* ioctl w/o */
        uint64_t lo_init[2];
    };
    """
    LOOP_INFO64_FMT = 'QQQQQIIII64s64s32sQQ'
    return struct.pack(
        LOOP_INFO64_FMT,
        0, 0, 0,
        lo_offset,
        lo_sizelimit,
        0, 0, 0,
        lo_flags,
        lo_file_name.encode('utf-8')[:63] + b'\0',
        b'\0',
        b'\0',
        0, 0
    )

libc = ctypes.CDLL(None, use_errno=True)
libc.mount.argtypes = (ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p, ctypes.c_ulong, ctypes.c_char_p)
libc.umount.argtypes = (ctypes.c_char_p, )

def _unescape_mountinfo(field: str) -> str:
    # spaces, tabs, newlines and backslashes are octal-escaped;
    for code, char in (('\\040', ' '), ('\\011', '\t'), ('\\012', '\n'), ('\\134', '\\')):
        field = field.replace(code, char)
    return field

def read_mount_points(mountinfo_path: str='/proc/self/mountinfo') -> set[str]:
    mount_points = set()
    with open(mountinfo_path) as fp:
        for line in fp:
            fields = line.split(' ')
            if len(fields) > 4:
                mount_points.add(_unescape_mountinfo(fields[4]))
    return mount_points

class AbstractMounter(ABC):
    """Blocking mount primitives; the mount manager runs them in the executor."""

    @abstractmethod
    def is_mounted(self, mount_dir: str) -> bool:
        pass

    @abstractmethod
    def mount(self, image_path: str, mount_dir: str):
        """Raises MountFailed."""
        pass

    @abstractmethod
    def umount(self, mount_dir: str):
        """Raises UnmountFailed."""
        pass

class LoopMounter(AbstractMounter):

    LOOP_CTL_GET_FREE = 0x4c82
    LOOP_SET_FD = 0x4c00
    LOOP_CLR_FD = 0x4c01
    LOOP_SET_STATUS64 = 0x4c04
    LO_FLAGS_AUTOCLEAR = 0x4

    FS_TYPES = ('ext4', 'ext3', 'vfat')

    def __init__(self, mountinfo_path: str='/proc/self/mountinfo'):
        self.mountinfo_path = mountinfo_path

    def is_mounted(self, mount_dir: str) -> bool:
        return os.path.realpath(mount_dir) in read_mount_points(self.mountinfo_path)

    def setup_loop_device(self, image_path: str) -> tuple[str, int]:
        # https://www.man7.org/linux/man-pages/man4/loop.4.html
        image_fd = os.open(image_path, os.O_RDWR)
        try:
            loopctl_fd = os.open('/dev/loop-control', os.O_RDWR)
            try:
                loop_index = fcntl.ioctl(loopctl_fd, LoopMounter.LOOP_CTL_GET_FREE)
            finally:
                os.close(loopctl_fd)
            loopdev_path = f'/dev/loop{loop_index}'
            loopdev_fd = os.open(loopdev_path, os.O_RDWR)
            try:
                fcntl.ioctl(loopdev_fd, LoopMounter.LOOP_SET_FD, image_fd)
                # the device detaches itself on the last umount;
                fcntl.ioctl(loopdev_fd, LoopMounter.LOOP_SET_STATUS64, create_loop_info64(
                    0, 0, LoopMounter.LO_FLAGS_AUTOCLEAR, image_path
                ))
            except OSError:
                os.close(loopdev_fd)
                raise
        finally:
            os.close(image_fd)
        return loopdev_path, loopdev_fd

    def mount(self, image_path: str, mount_dir: str):
        try:
            loopdev_path, loopdev_fd = self.setup_loop_device(image_path)
        except OSError as e:
            raise MountFailed(f'loop device for {image_path}: {e.strerror}')

        errors = []
        try:
            for fs_type in LoopMounter.FS_TYPES:
                ret = libc.mount(loopdev_path.encode(), mount_dir.encode(), fs_type.encode(), 0, b'')
                if ret == 0:
                    return
                errors.append(f'{fs_type}: {os.strerror(ctypes.get_errno())}')
            fcntl.ioctl(loopdev_fd, LoopMounter.LOOP_CLR_FD)
        finally:
            os.close(loopdev_fd)
        raise MountFailed(f'{image_path} at {mount_dir}: ' + ', '.join(errors))

    def umount(self, mount_dir: str):
        if libc.umount(mount_dir.encode()) != 0:
            raise UnmountFailed(f'{mount_dir}: {os.strerror(ctypes.get_errno())}')
