"""
UTILITIES PACKAGE
=================

Helpers used by the services and the client (no HTTP, no business logic):

  frame_decoder - FrameDecoder: incremental line-delimited JSON decoding, plus
                  encode_event() for the `data: <json>` event-stream format.
"""
