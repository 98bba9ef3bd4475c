AGENT_METHODS = {'authenticate': 'authenticate', 'initialize': 'initialize', 'session_auth': 'session/auth', 'session_cancel': 'session/cancel', 'session_new': 'session/new', 'session_prompt': 'session/prompt', 'tool_result': 'tool/result'}
CLIENT_METHODS = {'fs_read_text_file': 'fs/read_text_file', 'fs_write_text_file': 'fs/write_text_file', 'sampling_create_message': 'sampling/createMessage', 'session_request_permission': 'session/request_permission', 'session_update': 'session/update', 'terminal_execute': 'terminal/execute'}
PROTOCOL_VERSION = 1

# Tool names seen across agents, mapped onto the capability they drive.
TOOL_ALIASES = {
    'terminal/execute': 'terminal/execute',
    'terminal/run': 'terminal/execute',
    'shell': 'terminal/execute',
    'bash': 'terminal/execute',
    'run_command': 'terminal/execute',
    'fs/read_text_file': 'fs/read_text_file',
    'fs.read': 'fs/read_text_file',
    'read_file': 'fs/read_text_file',
    'read_text_file': 'fs/read_text_file',
    'fs/write_text_file': 'fs/write_text_file',
    'fs.write': 'fs/write_text_file',
    'write_file': 'fs/write_text_file',
    'write_text_file': 'fs/write_text_file',
}
