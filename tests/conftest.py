import logging

import pytest

from fakechain import BRIDGE_ABI_SIGNATURES, Bridge, FakeBackend, FakeChain, Factory, abi_for, addr, write_artifact
from reinit_probe.artifacts import ArtifactStore
from reinit_probe.config import Endpoint
from reinit_probe.fork import ForkSessionManager

BRIDGE = addr(0xB1D6E)
EMPTY = addr(0xE4E4)
ATTACKER = addr(0xA77AC)
FACTORY_CREATION = bytes.fromhex("fa570001")
FACTORY_RUNTIME = bytes.fromhex("6080604052fa57")


@pytest.fixture(autouse=True)
def package_logger():
    # the CLI installs its own handler and stops propagation; undo that for caplog
    yield
    pkg = logging.getLogger("reinit_probe")
    pkg.handlers[:] = []
    pkg.propagate = True
    pkg.setLevel(logging.NOTSET)


@pytest.fixture
def chain():
    chain = FakeChain(head=1000)
    chain.add_contract(BRIDGE, Bridge(guarded=True))
    # the bridge was initialized long ago by someone else
    chain.state.sstore(BRIDGE, 0, 1)
    chain.state.sstore(BRIDGE, 1, 0xDEAD)
    chain.register_creation(FACTORY_CREATION, Factory, FACTORY_RUNTIME)
    return chain


@pytest.fixture
def vulnerable_chain(chain):
    chain.state.behaviors[BRIDGE] = Bridge(guarded=False)
    return chain


@pytest.fixture
def artifact_dir(tmp_path):
    out = tmp_path / "out"
    write_artifact(out, "Bridge", abi_for(BRIDGE_ABI_SIGNATURES, errors=["NotOwner(address)"]), "0x")
    write_artifact(out, "TokenFactory", abi_for([("version()", ["uint256"])], constructor=["uint256"]),
                   "0x" + FACTORY_CREATION.hex())
    return out


@pytest.fixture
def artifacts(artifact_dir):
    return ArtifactStore(artifact_dir)


@pytest.fixture
def endpoint():
    return Endpoint(url="https://node.invalid/rpc", auth_token="secret")


@pytest.fixture
def backend(chain):
    return FakeBackend(chain)


@pytest.fixture
def manager(chain, backend):
    return ForkSessionManager(backend, upstream_factory=lambda ep: chain.client())


@pytest.fixture
def session(manager, endpoint):
    with manager.session(endpoint, 1000) as session:
        yield session
