"""Vendor register profiles for loom controllers.

A profile describes where each semantic field lives in the holding
register window, which fields are fixed-point x10 encoded, how stop
codes map to stop categories, and the vendor quirks.

Register addresses are 0-based protocol addresses, as sent on the
wire.  The configured window start is 1-based, so a window configured
at 5000 begins with address 4999.

Example:
    >>> from loommon.profile import get_profile, classify
    >>> classify(3, get_profile("A"))
    'weft'
"""

from dataclasses import dataclass

from loommon.errors import ReadProtocolError

# -- Categories --------------------------------------------------------------

CATEGORY_WARP = "warp"
CATEGORY_WEFT = "weft"
CATEGORY_FEEDER = "feeder"
CATEGORY_MANUAL = "manual"
CATEGORY_OTHER = "other"

CATEGORIES = (
    CATEGORY_WARP,
    CATEGORY_WEFT,
    CATEGORY_FEEDER,
    CATEGORY_MANUAL,
    CATEGORY_OTHER,
)

# Fixed-point x10 divisor for scaled fields.
SCALE_DIVISOR = 10

# Transports whose controllers report the RS-485 register encoding.
RS485_TRANSPORTS = ("rs485", "serial")

# A frame with all of these fields at zero is not yet meaningful.
SENTINEL_FIELDS = ("cloth_length", "loom_state", "speed")


@dataclass
class Frame:
    """A contiguous holding register window.

    *address* is the 0-based protocol address of ``registers[0]``.
    """

    address: int
    registers: list[int]

    def at(self, address: int) -> int:
        """Return the register stored at protocol *address*.

        Raises:
            ReadProtocolError: If *address* lies outside the window.
        """
        offset = address - self.address
        if not 0 <= offset < len(self.registers):
            raise ReadProtocolError(
                "address %d outside window %d-%d"
                % (address, self.address, self.address + len(self.registers) - 1)
            )
        return self.registers[offset]


@dataclass(frozen=True)
class DeviceProfile:
    """Static register map and decoding rules for one controller family.

    Attributes:
        name: Profile tag as used in machine configs (``"A"``, ``"B"``).
        fields: Semantic field name -> 0-based register address.
        categories: Stop code -> category name.  Codes not listed
            classify as ``"other"``.
        scaled_fields: Fields stored as fixed-point x10 values.
        scale_rs485_only: Apply the x10 scaling only when the machine is
            reached over an RS-485 transport.
        passthrough_fields: Fields copied into the snapshot unchanged.
        speed_override: If set, a decoded speed above this value forces
            the stop code to 0.
    """

    name: str
    fields: dict[str, int]
    categories: dict[int, str]
    scaled_fields: tuple[str, ...] = ()
    scale_rs485_only: bool = False
    passthrough_fields: tuple[str, ...] = ()
    speed_override: float | None = None

    def min_length(self, window_address: int) -> int:
        """Return the shortest window starting at *window_address* that
        covers every field of this profile."""
        return max(self.fields.values()) - window_address + 1

    def covers(self, window_address: int, count: int) -> bool:
        """True if a *count*-register window at *window_address* holds
        every field of this profile."""
        return (min(self.fields.values()) >= window_address
                and count >= self.min_length(window_address))

    def raw(self, frame: Frame, name: str) -> int:
        """Return the raw register value of field *name*."""
        return frame.at(self.fields[name])

    def scales(self, transport: str) -> bool:
        """Whether scaled fields are divided for *transport*."""
        if self.scale_rs485_only:
            return transport in RS485_TRANSPORTS
        return True

    def decode(self, frame: Frame, name: str, transport: str) -> float | int:
        """Return field *name* in engineering units."""
        value = self.raw(frame, name)
        if self._is_scaled(name) and self.scales(transport):
            return value / SCALE_DIVISOR
        return value

    def stop_code(self, frame: Frame, transport: str) -> int:
        """Return the effective stop code, applying the speed override."""
        code = self.raw(frame, "stop_code")
        if code != 0 and self.speed_override is not None:
            if self.decode(frame, "speed", transport) > self.speed_override:
                return 0
        return code

    def shift(self, frame: Frame) -> int:
        """Return the shift id carried by *frame*."""
        return self.raw(frame, "shift")

    def is_sentinel(self, frame: Frame) -> bool:
        """True if every sentinel field of *frame* is zero."""
        return all(self.raw(frame, name) == 0 for name in SENTINEL_FIELDS)

    def adjust(self, frame: Frame, transport: str) -> list[float | int]:
        """Return a copy of the register window in engineering units."""
        values: list[float | int] = list(frame.registers)
        if not self.scales(transport):
            return values
        for name in self.scaled_fields:
            if name in self.passthrough_fields:
                continue
            idx = self.fields[name] - frame.address
            values[idx] = values[idx] / SCALE_DIVISOR
        return values

    def _is_scaled(self, name: str) -> bool:
        return name in self.scaled_fields and name not in self.passthrough_fields


def _table(**groups: tuple[int, ...]) -> dict[int, str]:
    """Invert ``category=(codes...)`` keyword groups into code -> category."""
    table = {}
    for category, codes in groups.items():
        for code in codes:
            table[code] = category
    return table


# -- Profiles ----------------------------------------------------------------

PROFILE_A = DeviceProfile(
    name="A",
    fields={
        "speed": 5010,
        "shift": 5012,
        "cloth_length": 5018,
        "stop_code": 5027,
        "loom_state": 5028,
        "efficiency": 5035,
    },
    categories=_table(
        warp=(1, 19, 20),
        weft=(2, 3, 11, 12, 15, 16, 17, 18),
        feeder=(7,),
        manual=(4, 6),
    ),
    scaled_fields=("efficiency",),
    scale_rs485_only=True,
)

PROFILE_B = DeviceProfile(
    name="B",
    fields={
        "stop_code": 5040,
        "shift": 5041,
        "speed": 5042,
        "loom_state": 5043,
        "cloth_length": 5044,
        "efficiency": 5046,
    },
    categories=_table(
        warp=(1, 10),
        weft=(2, 3),
        feeder=(4,),
        manual=(5, 9),
    ),
    scaled_fields=("speed", "cloth_length"),
    passthrough_fields=("efficiency",),
    speed_override=5,
)

PROFILES = {p.name: p for p in (PROFILE_A, PROFILE_B)}


def get_profile(tag: str) -> DeviceProfile:
    """Look up a profile by its tag.

    Raises:
        ValueError: If *tag* names no known profile.
    """
    try:
        return PROFILES[tag]
    except KeyError:
        raise ValueError(
            "profile must be one of %s, got '%s'"
            % (", ".join(sorted(PROFILES)), tag)
        ) from None


def classify(code: int, profile: DeviceProfile) -> str:
    """Map a stop code to its category; unknown codes are ``"other"``."""
    return profile.categories.get(code, CATEGORY_OTHER)
