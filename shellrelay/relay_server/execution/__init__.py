"""Process execution layer for the relay server.

This package contains the components that own or drive child processes:

- **commands**: Provider-aware argv construction (terminal and chat runs)
- **process**: ``ManagedProcess`` backings (pseudoterminal, pipes)
- **supervisor**: Spawn, write, resize and kill session processes
- **urls**: Link-open detection in terminal output
- **shell_relay**: Per-connection relay loop for the shell channel
- **chat**: Agent-chat command dispatcher
"""
