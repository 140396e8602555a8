from blinker import Namespace

_signals = Namespace()

#: Sent once per website id after a transaction that changed that website's
#: tree has committed. Receivers get the website id as the sender.
tree_changed = _signals.signal("tree-changed")
