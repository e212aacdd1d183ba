# app.py - RescueLink server entry point (Port 5000)

import socket

from rescuelink import create_app
from rescuelink.extensions import socketio


def get_local_ip():
    """Detects the computer's local Wi-Fi/Ethernet IP address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


app = create_app()

if __name__ == '__main__':
    port = app.config['SERVER_PORT']
    print(f"\n=======================================================")
    print(f"--- RESCUELINK SERVER RUNNING ---")
    print(f"--- 1. On THIS Computer: http://127.0.0.1:{port}")
    print(f"--- 2. On OTHER Devices: http://{get_local_ip()}:{port}")
    print(f"=======================================================\n")
    socketio.run(app, host='0.0.0.0', port=port, allow_unsafe_werkzeug=True)
