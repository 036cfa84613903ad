"""
camcast
=======

Camera-to-network streaming appliance.

Frames are captured continuously; on command the appliance opens a TCP
endpoint, waits for a client, and from then on fans the encoded bitstream
out to every attached client until told to stop. Single stills can be
written at any time.

Components:
    - capture: Frame acquisition, reference-counted buffers and the frame relay
    - encoder: Frame-to-bitstream backends
    - output: Broadcast server and still writer
    - streaming: LangGraph state machine and the main loop
    - control: Commands from signals, stdin and HTTP

Example:
    from camcast.config import settings
    from camcast.main import create_appliance

    appliance = create_appliance(settings)
    appliance.start()
"""

__version__ = "0.1.0"
__author__ = "Camcast Project"

__all__ = [
    "__version__",
]
