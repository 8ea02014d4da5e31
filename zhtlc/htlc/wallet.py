"""Single-key transparent wallet (relayer hot wallet)."""

from dataclasses import dataclass, field

from ..core import Network
from ..errors import InvalidParameter
from .keys import derive_pubkey, parse_privkey
from .script import pubkey_to_address, address_to_script_pubkey


@dataclass
class Wallet:
    privkey: str
    network: Network = Network.TESTNET
    address: str = ""
    pubkey: str = field(init=False)

    def __post_init__(self):
        self.network = Network.parse(self.network)
        parse_privkey(self.privkey)
        self.pubkey = derive_pubkey(self.privkey)
        derived = pubkey_to_address(self.pubkey, self.network)
        if self.address and self.address != derived:
            raise InvalidParameter(
                f"Hot wallet address {self.address} does not match key (expected {derived})"
            )
        self.address = derived

    @property
    def script_pubkey(self) -> bytes:
        return address_to_script_pubkey(self.address, self.network)

    def __repr__(self) -> str:
        return f"Wallet(address={self.address!r}, network={self.network.value!r})"
