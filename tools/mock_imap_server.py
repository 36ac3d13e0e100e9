import base64
import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
DEFAULT_INTERNALDATE = "01-Jan-2024 10:00:00 +0000"
DELIMITER = "/"

_QUOTED = r'"((?:[^"\\]|\\.)*)"'


def _unquote(value):
    return re.sub(r"\\(.)", r"\1", value)


def _pattern_to_regex(pattern):
    out = []
    for ch in pattern:
        if ch == "*":
            out.append(".*")
        elif ch == "%":
            out.append(f"[^{re.escape(DELIMITER)}]*")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$")


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing purposes.
    Supports the commands the mail store adapter issues, with a "/" hierarchy.
    """

    def handle(self):
        self.wfile.write(b"* OK Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.server.connections += 1

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

                if cmd == "LOGIN":
                    if self.server.reject_login:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
                    else:
                        self.server.logins.append(args.split(" ", 1)[0].strip('"'))
                        self.send_response(tag, "OK LOGIN completed")

                elif cmd == "AUTHENTICATE":
                    self.wfile.write(b"+ \r\n")
                    response = self.rfile.readline().strip()
                    decoded = base64.b64decode(response).decode("utf-8", errors="ignore")
                    if "auth=Bearer " in decoded and not self.server.reject_login:
                        self.server.logins.append(decoded.split("\x01", 1)[0].replace("user=", ""))
                        self.send_response(tag, "OK AUTHENTICATE completed")
                    else:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")

                elif cmd == "LOGOUT":
                    self.server.logouts += 1
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "CAPABILITY":
                    self.wfile.write(b"* CAPABILITY IMAP4rev1 UNSELECT AUTH=PLAIN AUTH=XOAUTH2\r\n")
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP")

                elif cmd == "LIST":
                    self.handle_list(tag, args)

                elif cmd == "CREATE":
                    folder = _unquote(args.strip().strip('"'))
                    self.server.create_calls.append(folder)
                    name = folder.rstrip(DELIMITER)
                    if name in self.server.fail_create:
                        self.send_response(tag, "NO [CANNOT] Creation refused")
                    elif name in self.server.folders:
                        self.send_response(tag, "NO [ALREADYEXISTS] Mailbox exists")
                    else:
                        self.server.folders[name] = []
                        if folder.endswith(DELIMITER):
                            self.server.attributes[name] = {"\\Noselect"}
                        self.send_response(tag, "OK CREATE completed")

                elif cmd in ("SELECT", "EXAMINE"):
                    folder = _unquote(args.strip().strip('"'))
                    selectable = (
                        folder in self.server.folders
                        and "\\Noselect" not in self.server.attributes.get(folder, set())
                        and folder not in self.server.fail_select
                    )
                    if selectable:
                        self.selected_folder = folder
                        self.server.selects.append((cmd, folder))
                        count = len(self.server.folders[folder])
                        self.wfile.write(f"* {count} EXISTS\r\n".encode())
                        self.wfile.write(b"* 0 RECENT\r\n")
                        self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
                        if cmd == "SELECT":
                            self.send_response(tag, "OK [READ-WRITE] SELECT completed")
                        else:
                            self.send_response(tag, "OK [READ-ONLY] EXAMINE completed")
                    else:
                        self.selected_folder = None
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")

                elif cmd in ("UNSELECT", "CLOSE"):
                    if self.selected_folder:
                        self.selected_folder = None
                        self.send_response(tag, f"OK {cmd} completed")
                    else:
                        self.send_response(tag, RESPONSE_SELECT_FIRST)

                elif cmd == "UID":
                    self.handle_uid(tag, args)

                elif cmd == "APPEND":
                    self.handle_append(tag, args)

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except Exception:
                break

    def handle_list(self, tag, args):
        quoted = re.findall(_QUOTED, args)
        if len(quoted) < 2:
            self.send_response(tag, "BAD LIST arguments")
            return
        pattern = _unquote(quoted[1])

        if pattern == "":
            self.wfile.write(f'* LIST (\\Noselect) "{DELIMITER}" ""\r\n'.encode())
            self.send_response(tag, "OK LIST completed")
            return

        regex = _pattern_to_regex(pattern)
        for folder in self.server.folders:
            if not regex.match(folder):
                continue
            has_children = any(other.startswith(folder + DELIMITER) for other in self.server.folders)
            flags = ["\\HasChildren" if has_children else "\\HasNoChildren"]
            flags.extend(sorted(self.server.attributes.get(folder, set())))
            self.wfile.write(f'* LIST ({" ".join(flags)}) "{DELIMITER}" "{folder}"\r\n'.encode())
        self.send_response(tag, "OK LIST completed")

    def handle_uid(self, tag, args):
        sub_parts = args.split(" ", 1)
        sub_cmd = sub_parts[0].upper()
        sub_rest = sub_parts[1] if len(sub_parts) > 1 else ""

        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        msgs = self.server.folders[self.selected_folder]

        if sub_cmd == "SEARCH":
            uids = [str(m["uid"]) for m in msgs if not ("UNDELETED" in sub_rest and "\\Deleted" in m["flags"])]
            if uids:
                self.wfile.write(f"* SEARCH {' '.join(uids)}\r\n".encode())
            else:
                self.wfile.write(b"* SEARCH\r\n")
            self.send_response(tag, "OK SEARCH completed")

        elif sub_cmd == "FETCH":
            uid_set = sub_rest.split(" ", 1)[0]
            wanted = {int(u) for u in uid_set.split(",")}
            for index, m in enumerate(msgs, start=1):
                if m["uid"] not in wanted:
                    continue
                content = m["content"]
                flags_str = " ".join(sorted(m["flags"]))
                resp = (
                    f'* {index} FETCH (UID {m["uid"]} FLAGS ({flags_str}) '
                    f'INTERNALDATE "{m["date"]}" BODY[] {{{len(content)}}}\r\n'
                )
                self.wfile.write(resp.encode("utf-8"))
                self.wfile.write(content)
                self.wfile.write(b")\r\n")
            self.wfile.flush()
            self.send_response(tag, "OK FETCH completed")

        else:
            self.send_response(tag, "BAD UID command not supported")

    def handle_append(self, tag, args):
        match = re.search(r"\{(\d+)\}$", args)
        if not match:
            self.send_response(tag, "BAD APPEND")
            return

        size = int(match.group(1))
        self.wfile.write(b"+ Ready\r\n")
        data = self.rfile.read(size)

        # Args format: "<folder>" [(<flags>)] ["<internaldate>"] {<size>}
        quoted = re.findall(_QUOTED, args)
        folder = _unquote(quoted[0]) if quoted else args.split(" ")[0]
        date = quoted[1] if len(quoted) > 1 else DEFAULT_INTERNALDATE
        flags_match = re.search(r"\(([^)]*)\)", args)
        flags = set(flags_match.group(1).split()) if flags_match else set()

        with self.server.lock:
            self.server.append_count += 1
            attempt = self.server.append_count

        if attempt in self.server.fail_appends or any(marker in data for marker in self.server.reject_content):
            self.server.failed_appends.append(folder)
            self.send_response(tag, "NO [OVERQUOTA] Append refused")
            return

        if folder not in self.server.folders:
            self.send_response(tag, "NO [TRYCREATE] Folder not found")
            return

        dest_msgs = self.server.folders[folder]
        max_uid = max([m["uid"] for m in dest_msgs], default=0)
        dest_msgs.append({"uid": max_uid + 1, "flags": flags, "content": data, "date": date})
        self.server.appends.append(folder)
        self.send_response(tag, "OK APPEND completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None, attributes=None):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.Lock()
        self.folders = {}
        self.attributes = {name: set(flags) for name, flags in (attributes or {}).items()}
        for fname, contents in (initial_folders if initial_folders is not None else {"INBOX": []}).items():
            self.folders[fname] = []
            for i, c in enumerate(contents):
                if isinstance(c, bytes):
                    c = {"uid": i + 1, "flags": set(), "content": c}
                c.setdefault("date", DEFAULT_INTERNALDATE)
                self.folders[fname].append(c)

        # Fault injection
        self.reject_login = False
        self.fail_select = set()
        self.fail_create = set()
        self.fail_appends = set()  # 1-based APPEND attempt numbers that are refused
        self.reject_content = set()  # byte markers; any message containing one is refused

        # Recorded activity
        self.connections = 0
        self.logins = []
        self.logouts = 0
        self.selects = []
        self.create_calls = []
        self.appends = []
        self.failed_appends = []
        self.append_count = 0


def start_server_thread(port=0, initial_folders=None, attributes=None):
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, attributes)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
