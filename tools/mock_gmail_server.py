import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
ALL_MAIL = "[Gmail]/All Mail"


def _quoted_arg(name, args):
    m = re.search(name + r'\s+"((?:[^"\\]|\\.)*)"', args, re.IGNORECASE)
    if not m:
        return None
    return re.sub(r"\\(.)", r"\1", m.group(1))


class MockGmailHandler(socketserver.StreamRequestHandler):
    """
    A minimal Gmail-flavoured IMAP mock for testing purposes.
    Supports the X-GM-RAW / X-GM-LABELS / X-GM-THRID extensions, summary
    fetches and partial body fetches used by the thread extractor.
    """

    def handle(self):
        self.wfile.write(b"* OK Mock Gmail Server Ready\r\n")
        self.selected_folder = None

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""
                self.server.commands.append(line)

                if cmd == "LOGIN":
                    if self.server.password is not None and self.server.password not in args:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials (Failure)")
                    else:
                        self.send_response(tag, "OK LOGIN completed")

                elif cmd == "LOGOUT":
                    self.wfile.write(b"* BYE Logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "CAPABILITY":
                    self.wfile.write(b"* CAPABILITY IMAP4rev1 ENABLE UTF8=ACCEPT X-GM-EXT-1\r\n")
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "ENABLE":
                    self.wfile.write(f"* ENABLED {args.strip()}\r\n".encode())
                    self.send_response(tag, "OK ENABLE completed")

                elif cmd in ("SELECT", "EXAMINE"):
                    folder = args.strip().strip('"')
                    if folder in self.server.folders:
                        self.selected_folder = folder
                        count = len(self.server.folders[folder])
                        self.wfile.write(f"* {count} EXISTS\r\n".encode())
                        self.wfile.write(b"* 0 RECENT\r\n")
                        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
                        mode = "READ-ONLY" if cmd == "EXAMINE" else "READ-WRITE"
                        self.send_response(tag, f"OK [{mode}] {cmd} completed")
                    else:
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")

                elif cmd == "UID":
                    sub_parts = args.split(" ", 1)
                    sub_cmd = sub_parts[0].upper()
                    sub_rest = sub_parts[1] if len(sub_parts) > 1 else ""

                    if not self.selected_folder:
                        self.send_response(tag, RESPONSE_SELECT_FIRST)
                        continue

                    if sub_cmd == "SEARCH":
                        self.handle_search(tag, sub_rest)
                    elif sub_cmd == "FETCH":
                        self.handle_fetch(tag, sub_rest)
                    else:
                        self.send_response(tag, "BAD UID command not recognized")

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP")

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except Exception:
                break

    def handle_search(self, tag, sub_args):
        msgs = self.server.folders[self.selected_folder]
        raw = _quoted_arg("X-GM-RAW", sub_args)
        label = _quoted_arg("X-GM-LABELS", sub_args)
        thrid = re.search(r"X-GM-THRID\s+(\d+)", sub_args, re.IGNORECASE)

        uids = []
        for m in msgs:
            if raw is not None and raw.lower() not in m["content"].decode("utf-8", errors="ignore").lower():
                continue
            if label is not None and label not in m["labels"]:
                continue
            if thrid and m["thrid"] != int(thrid.group(1)):
                continue
            uids.append(str(m["uid"]))

        uids_str = " ".join(uids)
        self.wfile.write(f"* SEARCH {uids_str}\r\n".encode() if uids_str else b"* SEARCH\r\n")
        self.send_response(tag, "OK SEARCH completed")

    def handle_fetch(self, tag, sub_rest):
        parts = sub_rest.split(" ", 1)
        uid_set = {int(u) for u in parts[0].split(",")}
        opts = parts[1].upper() if len(parts) > 1 else ""
        msgs = self.server.folders[self.selected_folder]

        for seq, m in enumerate(msgs, start=1):
            if m["uid"] not in uid_set:
                continue
            content = m["content"]

            if "HEADER.FIELDS" in opts:
                header_bytes = content.split(b"\r\n\r\n")[0] + b"\r\n\r\n"
                resp = (
                    f"* {seq} FETCH (UID {m['uid']} X-GM-THRID {m['thrid']} RFC822.SIZE {len(content)} "
                    f'INTERNALDATE "{m["internaldate"]}" '
                    f"BODY[HEADER.FIELDS (SUBJECT FROM TO DATE)] {{{len(header_bytes)}}}\r\n"
                )
                self.wfile.write(resp.encode("utf-8"))
                self.wfile.write(header_bytes)
                self.wfile.write(b")\r\n")
                continue

            partial = re.search(r"BODY\.PEEK\[\]<(\d+)\.(\d+)>", opts)
            if partial:
                offset, length = int(partial.group(1)), int(partial.group(2))
                if self.server.fail_partial_after is not None and offset >= self.server.fail_partial_after:
                    self.send_response(tag, "NO Partial fetch refused")
                    return
                chunk = content[offset : offset + length]
                self.server.partial_fetches += 1
                self.wfile.write(f"* {seq} FETCH (UID {m['uid']} BODY[]<{offset}> {{{len(chunk)}}}\r\n".encode())
                self.wfile.write(chunk)
                self.wfile.write(b")\r\n")
            elif m["uid"] in self.server.broken_uids:
                self.send_response(tag, "NO Message body is not available")
                return
            else:
                self.wfile.write(f"* {seq} FETCH (UID {m['uid']} BODY[] {{{len(content)}}}\r\n".encode())
                self.wfile.write(content)
                self.wfile.write(b")\r\n")
            self.wfile.flush()

        self.send_response(tag, "OK FETCH completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockGmailServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, messages=None, password=None):
        super().__init__(server_address, request_handler_class)
        self.password = password
        self.commands = []
        self.broken_uids = set()
        self.fail_partial_after = None
        self.partial_fetches = 0
        self.folders = {ALL_MAIL: []}
        for i, msg in enumerate(messages or [], start=1):
            self.folders[ALL_MAIL].append(
                {
                    "uid": msg.get("uid", 100 + i),
                    "thrid": msg.get("thrid", i),
                    "labels": set(msg.get("labels", ())),
                    "internaldate": msg.get("internaldate", "01-Jan-2024 00:00:00 +0000"),
                    "content": msg["content"],
                }
            )


def start_server_thread(port=0, messages=None, password=None):
    """Start a mock Gmail server; returns (thread, server, port)."""
    server = MockGmailServer(("localhost", port), MockGmailHandler, messages, password)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return t, server, server.server_address[1]
