"""
Recursive-descent SQL parser.

Produces the statement tree defined in ast_nodes. Parsing never consults the
catalog: table and column existence are checked later by the planner.
"""

from dataclasses import fields, is_dataclass
from datetime import date
from typing import List, Optional, Tuple

from . import ast_nodes as ast
from .errors import SQLSyntaxError
from .lexer import Token, TokenType, syntax_error, tokenize
from .types import DataType


# Words that can never be used as a bare identifier or alias
RESERVED = frozenset({
    'ADD', 'ALL', 'ALTER', 'AND', 'AS', 'ASC', 'BETWEEN', 'BY', 'CASE', 'CAST',
    'CHECK', 'CONSTRAINT', 'CREATE', 'CROSS', 'DEFAULT', 'DELETE', 'DESC',
    'DISTINCT', 'DROP', 'ELSE', 'END', 'EXISTS', 'EXPLAIN', 'FALSE', 'FOREIGN',
    'FROM', 'FULL', 'GROUP', 'HAVING', 'IN', 'INDEX', 'INNER', 'INSERT', 'INTO',
    'IS', 'JOIN', 'LEFT', 'LIKE', 'LIMIT', 'NOT', 'NULL', 'OFFSET', 'ON', 'OR',
    'ORDER', 'OUTER', 'PRIMARY', 'REFERENCES', 'RIGHT', 'SELECT', 'SET', 'TABLE',
    'THEN', 'TRUE', 'UNIQUE', 'UPDATE', 'VALUES', 'WHEN', 'WHERE',
})

COMPARISON_OPS = ('=', '<>', '!=', '<', '<=', '>', '>=')

# Parenthesised or prefixed sub-expressions allowed inside one another
MAX_NESTING = 32

# Deepest statement tree the planner and evaluator are asked to walk
MAX_TREE_DEPTH = 256


def tree_depth(node) -> int:
    """Depth of a statement tree, measured without recursion."""
    deepest = 0
    stack = [(node, 1)]
    while stack:
        item, depth = stack.pop()
        if is_dataclass(item):
            children = [getattr(item, field.name) for field in fields(item)]
        elif isinstance(item, (tuple, list)):
            children = item
        else:
            continue
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in children)
    return deepest


class Parser:
    """Parses a token list into statements."""

    def __init__(self, text: str, tokens: List[Token]):
        self.text = text
        self.tokens = tokens
        self.pos = 0
        self.nesting = 0

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def _peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self.current
        if token.type != TokenType.EOF:
            self.pos += 1
        return token

    def _error(self, message: str, token: Optional[Token] = None) -> SQLSyntaxError:
        token = token or self.current
        return syntax_error(self.text, message, str(token), token.position)

    def _unexpected(self, expected: str) -> SQLSyntaxError:
        return self._error(f"Expected {expected} but found '{self.current}'")

    def _peek_keyword(self, *words: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token.type == TokenType.WORD and token.upper in words

    def _accept_keyword(self, *words: str) -> Optional[str]:
        if self._peek_keyword(*words):
            return self._advance().upper
        return None

    def _expect_keyword(self, word: str) -> str:
        if not self._peek_keyword(word):
            raise self._unexpected(word)
        return self._advance().upper

    def _peek_symbol(self, *symbols: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token.type == TokenType.SYMBOL and token.value in symbols

    def _accept_symbol(self, symbol: str) -> bool:
        if self._peek_symbol(symbol):
            self._advance()
            return True
        return False

    def _expect_symbol(self, symbol: str) -> Token:
        if not self._peek_symbol(symbol):
            raise self._unexpected(f"'{symbol}'")
        return self._advance()

    def _is_identifier(self, offset: int = 0) -> bool:
        token = self._peek(offset)
        if token.type == TokenType.QUOTED_IDENT:
            return True
        return token.type == TokenType.WORD and token.upper not in RESERVED

    def _identifier(self, what: str = 'identifier') -> str:
        if not self._is_identifier():
            raise self._unexpected(what)
        return self._advance().value

    def _identifier_list(self) -> Tuple[str, ...]:
        self._expect_symbol('(')
        names = [self._identifier('column name')]
        while self._accept_symbol(','):
            names.append(self._identifier('column name'))
        self._expect_symbol(')')
        return tuple(names)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _check_depth(self, statement: ast.Statement) -> ast.Statement:
        if tree_depth(statement) > MAX_TREE_DEPTH:
            raise self._error("Statement is nested too deeply")
        return statement

    def parse_single(self) -> ast.Statement:
        statement = self._check_depth(self.parse_statement())
        self._accept_symbol(';')
        if self.current.type != TokenType.EOF:
            raise self._error(f"Unexpected '{self.current}' after end of statement")
        return statement

    def parse_script(self) -> List[ast.Statement]:
        statements = []
        while True:
            while self._accept_symbol(';'):
                pass
            if self.current.type == TokenType.EOF:
                return statements
            statements.append(self._check_depth(self.parse_statement()))
            if self.current.type != TokenType.EOF:
                self._expect_symbol(';')

    def parse_statement(self) -> ast.Statement:
        token = self.current
        if token.type != TokenType.WORD:
            if token.type == TokenType.EOF:
                raise self._error("Empty statement")
            raise self._unexpected('a statement')

        keyword = token.upper
        if keyword == 'SELECT':
            return self._parse_select()
        elif keyword == 'INSERT':
            return self._parse_insert()
        elif keyword == 'UPDATE':
            return self._parse_update()
        elif keyword == 'DELETE':
            return self._parse_delete()
        elif keyword == 'CREATE':
            return self._parse_create()
        elif keyword == 'DROP':
            return self._parse_drop()
        elif keyword == 'ALTER':
            return self._parse_alter()
        elif keyword == 'EXPLAIN':
            self._advance()
            if not self._peek_keyword('SELECT'):
                raise self._unexpected('SELECT after EXPLAIN')
            return ast.Explain(self._parse_select())
        raise self._error(f"Unsupported statement '{token}'")

    def _parse_select(self) -> ast.Select:
        self._expect_keyword('SELECT')
        distinct = bool(self._accept_keyword('DISTINCT'))
        if not distinct:
            self._accept_keyword('ALL')

        items = [self._parse_select_item()]
        while self._accept_symbol(','):
            items.append(self._parse_select_item())

        from_table = None
        joins: List[ast.Join] = []
        if self._accept_keyword('FROM'):
            from_table = self._parse_table_ref()
            joins = self._parse_joins()

        where = self._parse_expression() if self._accept_keyword('WHERE') else None

        group_by: List[ast.Expression] = []
        if self._accept_keyword('GROUP'):
            self._expect_keyword('BY')
            group_by.append(self._parse_expression())
            while self._accept_symbol(','):
                group_by.append(self._parse_expression())

        having = self._parse_expression() if self._accept_keyword('HAVING') else None

        order_by: List[ast.OrderItem] = []
        if self._accept_keyword('ORDER'):
            self._expect_keyword('BY')
            order_by.append(self._parse_order_item())
            while self._accept_symbol(','):
                order_by.append(self._parse_order_item())

        limit = offset = None
        if self._accept_keyword('LIMIT'):
            limit = self._parse_additive()
        if self._accept_keyword('OFFSET'):
            offset = self._parse_additive()

        return ast.Select(
            items=tuple(items),
            from_table=from_table,
            joins=tuple(joins),
            where=where,
            group_by=tuple(group_by),
            having=having,
            order_by=tuple(order_by),
            distinct=distinct,
            limit=limit,
            offset=offset,
        )

    def _parse_select_item(self) -> ast.SelectItem:
        if self._accept_symbol('*'):
            return ast.SelectItem(ast.Star())
        if self._is_identifier() and self._peek_symbol('.', offset=1) and self._peek_symbol('*', offset=2):
            table = self._advance().value
            self._advance()
            self._advance()
            return ast.SelectItem(ast.Star(table))

        expr = self._parse_expression()
        return ast.SelectItem(expr, self._parse_alias())

    def _parse_alias(self) -> Optional[str]:
        if self._accept_keyword('AS'):
            return self._identifier('alias')
        if self._is_identifier():
            return self._advance().value
        return None

    def _parse_table_ref(self) -> ast.TableRef:
        name = self._identifier('table name')
        return ast.TableRef(name, self._parse_alias())

    def _parse_joins(self) -> List[ast.Join]:
        joins = []
        while True:
            if self._accept_symbol(','):
                joins.append(ast.Join(ast.JoinKind.CROSS, self._parse_table_ref()))
                continue

            if self._accept_keyword('CROSS'):
                self._expect_keyword('JOIN')
                joins.append(ast.Join(ast.JoinKind.CROSS, self._parse_table_ref()))
                continue

            kind = None
            if self._accept_keyword('JOIN'):
                kind = ast.JoinKind.INNER
            elif self._accept_keyword('INNER'):
                self._expect_keyword('JOIN')
                kind = ast.JoinKind.INNER
            elif self._peek_keyword('LEFT', 'RIGHT', 'FULL'):
                kind = ast.JoinKind(self._advance().upper)
                self._accept_keyword('OUTER')
                self._expect_keyword('JOIN')
            if kind is None:
                return joins

            table = self._parse_table_ref()
            self._expect_keyword('ON')
            joins.append(ast.Join(kind, table, self._parse_expression()))

    def _parse_order_item(self) -> ast.OrderItem:
        expr = self._parse_expression()
        direction = self._accept_keyword('ASC', 'DESC')
        return ast.OrderItem(expr, descending=(direction == 'DESC'))

    def _parse_insert(self) -> ast.Insert:
        self._expect_keyword('INSERT')
        self._expect_keyword('INTO')
        table = self._identifier('table name')

        columns = None
        if self._peek_symbol('(') and not self._peek_keyword('SELECT', offset=1):
            columns = self._identifier_list()

        if self._peek_keyword('SELECT'):
            return ast.Insert(table, columns, query=self._parse_select())
        if self._peek_symbol('(') and self._peek_keyword('SELECT', offset=1):
            self._advance()
            query = self._parse_select()
            self._expect_symbol(')')
            return ast.Insert(table, columns, query=query)

        self._expect_keyword('VALUES')
        rows = [self._parse_value_tuple()]
        while self._accept_symbol(','):
            rows.append(self._parse_value_tuple())
        return ast.Insert(table, columns, rows=tuple(rows))

    def _parse_value_tuple(self) -> Tuple[ast.Expression, ...]:
        self._expect_symbol('(')
        values = [self._parse_expression()]
        while self._accept_symbol(','):
            values.append(self._parse_expression())
        self._expect_symbol(')')
        return tuple(values)

    def _parse_update(self) -> ast.Update:
        self._expect_keyword('UPDATE')
        table = self._identifier('table name')
        self._expect_keyword('SET')

        assignments = [self._parse_assignment()]
        while self._accept_symbol(','):
            assignments.append(self._parse_assignment())

        where = self._parse_expression() if self._accept_keyword('WHERE') else None
        return ast.Update(table, tuple(assignments), where)

    def _parse_assignment(self) -> Tuple[str, ast.Expression]:
        column = self._identifier('column name')
        self._expect_symbol('=')
        return column, self._parse_expression()

    def _parse_delete(self) -> ast.Delete:
        self._expect_keyword('DELETE')
        self._expect_keyword('FROM')
        table = self._identifier('table name')
        where = self._parse_expression() if self._accept_keyword('WHERE') else None
        return ast.Delete(table, where)

    def _parse_if_not_exists(self) -> bool:
        if self._peek_keyword('IF') and self._peek_keyword('NOT', offset=1):
            self._advance()
            self._advance()
            self._expect_keyword('EXISTS')
            return True
        return False

    def _parse_if_exists(self) -> bool:
        if self._peek_keyword('IF') and self._peek_keyword('EXISTS', offset=1):
            self._advance()
            self._advance()
            return True
        return False

    def _parse_create(self) -> ast.Statement:
        self._expect_keyword('CREATE')
        if self._accept_keyword('TABLE'):
            return self._parse_create_table()

        unique = bool(self._accept_keyword('UNIQUE'))
        if self._accept_keyword('INDEX'):
            return self._parse_create_index(unique)
        raise self._unexpected('TABLE or INDEX after CREATE')

    def _parse_create_table(self) -> ast.CreateTable:
        if_not_exists = self._parse_if_not_exists()
        name = self._identifier('table name')
        self._expect_symbol('(')

        columns: List[ast.ColumnDefNode] = []
        constraints = []
        while True:
            if self._peek_keyword('CONSTRAINT', 'PRIMARY', 'UNIQUE', 'FOREIGN', 'CHECK'):
                constraints.append(self._parse_table_constraint())
            else:
                columns.append(self._parse_column_def())
            if not self._accept_symbol(','):
                break
        self._expect_symbol(')')

        if not columns:
            raise self._error(f"Table '{name}' must have at least one column")
        return ast.CreateTable(name, tuple(columns), tuple(constraints), if_not_exists)

    def _parse_type(self) -> DataType:
        token = self.current
        if token.type != TokenType.WORD:
            raise self._unexpected('a data type')
        self._advance()
        if token.upper == 'DOUBLE':
            self._accept_keyword('PRECISION')
        try:
            dtype = DataType.from_name(token.value)
        except ValueError as e:
            raise self._error(str(e), token) from None

        # Length / precision modifiers are accepted and ignored
        if self._accept_symbol('('):
            while True:
                if self.current.type != TokenType.NUMBER:
                    raise self._unexpected('a type modifier')
                self._advance()
                if not self._accept_symbol(','):
                    break
            self._expect_symbol(')')
        return dtype

    def _parse_column_def(self) -> ast.ColumnDefNode:
        name = self._identifier('column name')
        dtype = self._parse_type()

        not_null = primary_key = unique = False
        default = None
        checks: List[ast.CheckClause] = []
        references = None

        while True:
            constraint_name = None
            if self._accept_keyword('CONSTRAINT'):
                constraint_name = self._identifier('constraint name')

            if self._accept_keyword('NOT'):
                self._expect_keyword('NULL')
                not_null = True
            elif self._accept_keyword('NULL'):
                pass
            elif self._accept_keyword('PRIMARY'):
                self._expect_keyword('KEY')
                primary_key = True
            elif self._accept_keyword('UNIQUE'):
                unique = True
            elif self._accept_keyword('DEFAULT'):
                default = self._parse_unary()
            elif self._accept_keyword('CHECK'):
                expr, text = self._parse_parenthesized_check()
                checks.append(ast.CheckClause(expr, constraint_name, text))
            elif self._accept_keyword('REFERENCES'):
                references = self._parse_references((name,), constraint_name)
            elif constraint_name is not None:
                raise self._unexpected('a constraint after CONSTRAINT name')
            else:
                break

        return ast.ColumnDefNode(
            name=name,
            dtype=dtype,
            not_null=not_null,
            primary_key=primary_key,
            unique=unique,
            default=default,
            checks=tuple(checks),
            references=references,
        )

    def _parse_parenthesized_check(self) -> Tuple[ast.Expression, str]:
        self._expect_symbol('(')
        start = self.current.position
        expr = self._parse_expression()
        end = self.current.position
        self._expect_symbol(')')
        return expr, self.text[start:end].strip()

    def _parse_references(self, columns: Tuple[str, ...], name: Optional[str]) -> ast.ForeignKeyClause:
        ref_table = self._identifier('table name')
        ref_columns: Tuple[str, ...] = ()
        if self._peek_symbol('('):
            ref_columns = self._identifier_list()

        on_delete = 'NO ACTION'
        while self._accept_keyword('ON'):
            if self._accept_keyword('UPDATE'):
                raise self._error("ON UPDATE actions are not supported")
            self._expect_keyword('DELETE')
            if self._accept_keyword('CASCADE'):
                on_delete = 'CASCADE'
            elif self._accept_keyword('RESTRICT'):
                on_delete = 'RESTRICT'
            elif self._accept_keyword('SET'):
                self._expect_keyword('NULL')
                on_delete = 'SET NULL'
            elif self._accept_keyword('NO'):
                self._expect_keyword('ACTION')
                on_delete = 'NO ACTION'
            else:
                raise self._unexpected('CASCADE, SET NULL, RESTRICT or NO ACTION')

        return ast.ForeignKeyClause(columns, ref_table, ref_columns, on_delete, name)

    def _parse_table_constraint(self):
        name = None
        if self._accept_keyword('CONSTRAINT'):
            name = self._identifier('constraint name')

        if self._accept_keyword('PRIMARY'):
            self._expect_keyword('KEY')
            return ast.PrimaryKeyClause(self._identifier_list(), name)
        if self._accept_keyword('UNIQUE'):
            return ast.UniqueClause(self._identifier_list(), name)
        if self._accept_keyword('FOREIGN'):
            self._expect_keyword('KEY')
            columns = self._identifier_list()
            self._expect_keyword('REFERENCES')
            return self._parse_references(columns, name)
        if self._accept_keyword('CHECK'):
            expr, text = self._parse_parenthesized_check()
            return ast.CheckClause(expr, name, text)
        raise self._unexpected('PRIMARY KEY, UNIQUE, FOREIGN KEY or CHECK')

    def _parse_create_index(self, unique: bool) -> ast.CreateIndex:
        if_not_exists = self._parse_if_not_exists()
        name = self._identifier('index name')
        self._expect_keyword('ON')
        table = self._identifier('table name')

        self._expect_symbol('(')
        columns = []
        while True:
            column = self._identifier('column name')
            direction = self._accept_keyword('ASC', 'DESC') or 'ASC'
            columns.append((column, direction))
            if not self._accept_symbol(','):
                break
        self._expect_symbol(')')
        return ast.CreateIndex(name, table, tuple(columns), unique, if_not_exists)

    def _parse_drop(self) -> ast.Statement:
        self._expect_keyword('DROP')
        if self._accept_keyword('TABLE'):
            if_exists = self._parse_if_exists()
            return ast.DropTable(self._identifier('table name'), if_exists)
        if self._accept_keyword('INDEX'):
            if_exists = self._parse_if_exists()
            return ast.DropIndex(self._identifier('index name'), if_exists)
        raise self._unexpected('TABLE or INDEX after DROP')

    def _parse_alter(self) -> ast.AlterTableAddColumn:
        self._expect_keyword('ALTER')
        self._expect_keyword('TABLE')
        table = self._identifier('table name')
        if not self._accept_keyword('ADD'):
            raise self._error("Only ALTER TABLE ... ADD COLUMN is supported")
        self._accept_keyword('COLUMN')
        return ast.AlterTableAddColumn(table, self._parse_column_def())

    # ------------------------------------------------------------------
    # Expressions, lowest precedence first:
    # OR < AND < comparison < additive < multiplicative < unary (-, NOT)
    # ------------------------------------------------------------------

    def _nested(self, parse) -> ast.Expression:
        if self.nesting >= MAX_NESTING:
            raise self._error("Expression is nested too deeply")
        self.nesting += 1
        try:
            return parse()
        finally:
            self.nesting -= 1

    def _parse_expression(self) -> ast.Expression:
        return self._nested(self._parse_or)

    def _parse_or(self) -> ast.Expression:
        left = self._parse_and()
        while self._accept_keyword('OR'):
            left = ast.BinaryOp('OR', left, self._parse_and())
        return left

    def _parse_and(self) -> ast.Expression:
        left = self._parse_comparison()
        while self._accept_keyword('AND'):
            left = ast.BinaryOp('AND', left, self._parse_comparison())
        return left

    def _parse_comparison(self) -> ast.Expression:
        left = self._parse_additive()

        if self._peek_symbol(*COMPARISON_OPS):
            op = self._advance().value
            if op == '!=':
                op = '<>'
            return ast.BinaryOp(op, left, self._parse_additive())

        if self._accept_keyword('IS'):
            negated = bool(self._accept_keyword('NOT'))
            self._expect_keyword('NULL')
            return ast.IsNull(left, negated)

        negated = False
        if self._peek_keyword('NOT') and self._peek_keyword('IN', 'BETWEEN', 'LIKE', offset=1):
            self._advance()
            negated = True

        if self._accept_keyword('IN'):
            self._expect_symbol('(')
            if self._peek_keyword('SELECT'):
                query = self._parse_select()
                self._expect_symbol(')')
                return ast.InSubquery(left, query, negated)
            items = [self._parse_expression()]
            while self._accept_symbol(','):
                items.append(self._parse_expression())
            self._expect_symbol(')')
            return ast.InList(left, tuple(items), negated)

        if self._accept_keyword('BETWEEN'):
            low = self._parse_additive()
            self._expect_keyword('AND')
            high = self._parse_additive()
            return ast.Between(left, low, high, negated)

        if self._accept_keyword('LIKE'):
            return ast.Like(left, self._parse_additive(), negated)

        if negated:
            raise self._unexpected('IN, BETWEEN or LIKE after NOT')
        return left

    def _parse_additive(self) -> ast.Expression:
        left = self._parse_multiplicative()
        while self._peek_symbol('+', '-', '||'):
            op = self._advance().value
            left = ast.BinaryOp(op, left, self._parse_multiplicative())
        return left

    def _parse_multiplicative(self) -> ast.Expression:
        left = self._parse_unary()
        while self._peek_symbol('*', '/', '%'):
            op = self._advance().value
            left = ast.BinaryOp(op, left, self._parse_unary())
        return left

    def _parse_unary(self) -> ast.Expression:
        if self._peek_symbol('-'):
            self._advance()
            if self.current.type == TokenType.NUMBER:
                return ast.Literal(-self._advance().value)
            return ast.UnaryOp('-', self._nested(self._parse_unary))
        if self._accept_symbol('+'):
            return ast.UnaryOp('+', self._nested(self._parse_unary))
        if self._accept_keyword('NOT'):
            return ast.UnaryOp('NOT', self._nested(self._parse_unary))
        return self._parse_primary()

    def _parse_primary(self) -> ast.Expression:
        token = self.current

        if token.type == TokenType.NUMBER or token.type == TokenType.STRING:
            self._advance()
            return ast.Literal(token.value)

        if self._accept_symbol('('):
            if self._peek_keyword('SELECT'):
                query = self._parse_select()
                self._expect_symbol(')')
                return ast.Subquery(query)
            expr = self._parse_expression()
            self._expect_symbol(')')
            return expr

        if token.type == TokenType.WORD:
            keyword = token.upper
            if keyword == 'NULL':
                self._advance()
                return ast.Literal(None)
            if keyword in ('TRUE', 'FALSE'):
                self._advance()
                return ast.Literal(keyword == 'TRUE')
            if keyword == 'DATE' and self._peek(1).type == TokenType.STRING:
                self._advance()
                literal = self._advance()
                try:
                    return ast.Literal(date.fromisoformat(literal.value))
                except ValueError:
                    raise self._error(f"Invalid date literal '{literal.value}'", literal) from None
            if keyword == 'CASE':
                return self._parse_case()
            if keyword == 'CAST':
                self._advance()
                self._expect_symbol('(')
                operand = self._parse_expression()
                self._expect_keyword('AS')
                dtype = self._parse_type()
                self._expect_symbol(')')
                return ast.Cast(operand, dtype)
            if keyword == 'EXISTS':
                self._advance()
                self._expect_symbol('(')
                query = self._parse_select()
                self._expect_symbol(')')
                return ast.Exists(query)

        if self._is_identifier():
            if self._peek_symbol('(', offset=1):
                return self._parse_function_call()
            name = self._advance().value
            if self._accept_symbol('.'):
                return ast.ColumnRef(self._identifier('column name'), table=name)
            return ast.ColumnRef(name)

        raise self._unexpected('an expression')

    def _parse_function_call(self) -> ast.FunctionCall:
        name = self._advance().value.upper()
        self._expect_symbol('(')

        if self._accept_symbol('*'):
            self._expect_symbol(')')
            if name != 'COUNT':
                raise self._error(f"{name}(*) is not allowed; only COUNT(*)")
            return ast.FunctionCall(name, (), star=True)

        distinct = bool(self._accept_keyword('DISTINCT'))
        args: List[ast.Expression] = []
        if not self._peek_symbol(')'):
            args.append(self._parse_expression())
            while self._accept_symbol(','):
                args.append(self._parse_expression())
        self._expect_symbol(')')
        return ast.FunctionCall(name, tuple(args), distinct=distinct)

    def _parse_case(self) -> ast.Case:
        self._expect_keyword('CASE')
        whens = []
        while self._accept_keyword('WHEN'):
            condition = self._parse_expression()
            self._expect_keyword('THEN')
            whens.append((condition, self._parse_expression()))
        if not whens:
            raise self._unexpected('WHEN')
        else_result = self._parse_expression() if self._accept_keyword('ELSE') else None
        self._expect_keyword('END')
        return ast.Case(tuple(whens), else_result)


class QueryParser:
    """Parses SQL text into statement trees."""

    def __init__(self, max_length: Optional[int] = None):
        self.max_length = max_length

    def _tokenize(self, query: str) -> List[Token]:
        if self.max_length is not None and len(query) > self.max_length:
            raise SQLSyntaxError(
                f"Statement is {len(query)} characters long; the limit is {self.max_length}"
            )
        return tokenize(query)

    def parse(self, query: str) -> ast.Statement:
        """Parse exactly one statement; a trailing semicolon is allowed."""
        return Parser(query, self._tokenize(query)).parse_single()

    def parse_script(self, script: str) -> List[ast.Statement]:
        """Parse a semicolon-separated sequence of statements."""
        return Parser(script, self._tokenize(script)).parse_script()


def parse_sql(query: str) -> ast.Statement:
    return QueryParser().parse(query)
