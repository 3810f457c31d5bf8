from xmtp_relay.app import run_listener

run_listener()
